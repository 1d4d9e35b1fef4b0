"""Appointment domain - Booking creation, cancellation and merchant status actions"""

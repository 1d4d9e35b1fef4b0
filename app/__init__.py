"""Booking and payment backend"""

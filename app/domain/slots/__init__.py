"""Slot domain - Per-staff, per-day bookable time windows"""

"""Scheduled housekeeping run by the ARQ worker"""

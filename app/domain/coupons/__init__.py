"""Coupon domain - Coupon templates, claiming and redemption"""

"""Domain packages - one per business capability"""

"""Wearable sync helpers.

Modules:
    backfill — Concurrent historical backfill over a date window
"""

"""Utility helpers for mailcow-backup."""

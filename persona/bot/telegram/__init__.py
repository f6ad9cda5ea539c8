"""Telegram webhook transport."""

"""Durable one-shot SMS notifications for reminders and appointments."""

__version__ = "0.1.0"

"""Telegram long-polling entry point and message routing."""

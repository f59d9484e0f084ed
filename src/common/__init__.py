"""
Common utilities for family-lookup-bot.

Modules:
- config: environment / .env configuration
- family_lookup: upstream family record client
- formatting: user-facing message copy and record rendering
- masking: display redaction helpers
- telegram: Telegram Bot API client
"""

__all__ = [
    "config",
    "family_lookup",
    "formatting",
    "masking",
    "telegram",
]

from __future__ import annotations

from html import escape
from typing import Any, List, Optional

from .family_lookup import FamilyMember, FamilyRecord
from .masking import PLACEHOLDER, mask_name, mask_tail


# Characters kept visible when masking
ADDRESS_KEEP_LAST = 6
MEMBER_ID_KEEP_LAST = 4

SEPARATOR = "────────────────────"
EXAMPLE_ID = "116440054586"

SENSITIVE_WARNING = "⚠️ Sensitive output is ENABLED. Handle with caution."
MASKED_NOTICE = "🔒 Sensitive fields are masked. Set SHOW_SENSITIVE=true to see full data."

ACCESS_GRANTED = "✅ Access Granted! You can now send family IDs to fetch info."
ACCESS_DENIED = "🔒 Access Restricted. Please enter the correct access code."
INVALID_ID = f"⚠️ Please send a valid family ID (6-15 digits only). Example: {EXAMPLE_ID}"
FETCHING = "🔍 Fetching family info..."
NOT_FOUND = "❌ No data found for this family ID."
GENERIC_FAILURE = "❌ Something went wrong while handling your request. Please try again."
STATS_DENIED = "🚫 You must be authorized to see stats. Enter the access code first."
UNKNOWN_COMMAND = "🤔 Unknown command. Use /help to see what I can do."


def format_greeting(first_name: Optional[str] = None) -> str:
    name = f" {escape(first_name)}" if first_name else ""
    return (
        f"👋 Hello{name}!\n\n"
        "Welcome to the <b>Family Info Bot</b> 🔍\n\n"
        "Please enter your <b>access code</b> to continue."
    )


def format_help() -> str:
    return (
        "📘 <b>How to use:</b>\n"
        "1. Send your access code.\n"
        "2. Once authorized, send any <i>family ID</i> to fetch details.\n\n"
        f"Example: <code>{EXAMPLE_ID}</code>\n\n"
        "📊 Use /stats to see your queries and bot stats."
    )


def format_stats(*, total_users: int, authorized_users: int, your_queries: int, total_lookups: int) -> str:
    return "\n".join(
        [
            "📊 <b>Bot Stats:</b>",
            SEPARATOR,
            f"👥 Known Users: {total_users}",
            f"👤 Authorized Users: {authorized_users}",
            f"📈 Your Queries: {your_queries}",
            f"🌐 Total Lookups: {total_lookups}",
        ]
    )


def format_lookup_failure(reason: str) -> str:
    return f"❌ Failed to fetch data: {escape(reason)}"


def _text(value: Any) -> str:
    if value is None or value == "":
        return PLACEHOLDER
    return escape(str(value))


def _line(label: str, value: Any) -> str:
    return f"{label}: {_text(value)}"


def _format_member(index: int, member: FamilyMember, *, show_sensitive: bool) -> str:
    if show_sensitive:
        name = member.member_name
        member_id = member.member_id
    else:
        name = mask_name(member.member_name)
        member_id = mask_tail(member.member_id, MEMBER_ID_KEEP_LAST)
    relation = member.relationship_name
    return f"{index}. {_text(name)} — {_text(relation)}\n   🆔 {_text(member_id)}"


def format_family_record(record: FamilyRecord, *, show_sensitive: bool = False) -> str:
    """Render a family record as an HTML-formatted Telegram message.

    Address, member names and member ids are masked unless `show_sensitive`
    is set, in which case raw values are shown followed by a warning banner.
    Members are listed in the order received.
    """
    address = record.address if show_sensitive else mask_tail(record.address, ADDRESS_KEEP_LAST)

    members: List[str] = [
        _format_member(i, m, show_sensitive=show_sensitive)
        for i, m in enumerate(record.members, start=1)
    ]

    parts = [
        "🪪 <b>Family Info</b>",
        SEPARATOR,
        _line("Scheme", record.scheme_name),
        _line("District", record.district),
        _line("State", record.state),
        _line("Address", address),
        "",
        "👨‍👩‍👧‍👦 <b>Members:</b>",
        "\n\n".join(members) if members else "(no members listed)",
        "",
        SENSITIVE_WARNING if show_sensitive else MASKED_NOTICE,
    ]
    return "\n".join(parts)


__all__ = [
    "format_greeting",
    "format_help",
    "format_stats",
    "format_lookup_failure",
    "format_family_record",
]

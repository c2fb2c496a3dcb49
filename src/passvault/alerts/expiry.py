"""Expiry extraction and alert wording for vault items.

Vault payloads carry expiry in several shapes: an inline ``MM/YY`` field,
a serialized sub-document (QR scans store the decoded JSON as
``data["text"]``), or only a top-level ``expires_at`` timestamp. They are
modelled as one tagged union and resolved by ``normalize_expiry()``:

    ExpirySource = InlineExpiry | NestedEncoded | AbsentExpiry

Rules:
    - a nested payload is decoded; on decode failure the outer payload is used
    - ``MM/YY`` means valid through the LAST calendar day of that month
    - otherwise fall back to the item's ``expires_at`` timestamp
    - otherwise there is no expiry and the item is skipped
"""

import calendar
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from ..core.db import parse_iso

# ── Tagged union ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class InlineExpiry:
    """An ``MM/YY`` value found directly in the payload."""

    value: str


@dataclass(frozen=True)
class NestedEncoded:
    """A serialized sub-document, plus the outer payload's own expiry field."""

    text: str
    outer_expiry: Optional[str] = None


@dataclass(frozen=True)
class AbsentExpiry:
    """No expiry field in the payload."""


ExpirySource = Union[InlineExpiry, NestedEncoded, AbsentExpiry]


@dataclass(frozen=True)
class ResolvedExpiry:
    expiry_date: datetime
    expiry_formatted: Optional[str] = None   # the MM/YY string as seen


def classify_expiry_source(data: Dict[str, Any]) -> ExpirySource:
    """Tag an item payload by where its expiry can be found."""
    if not isinstance(data, dict):
        return AbsentExpiry()
    outer = data.get("expiry")
    outer = str(outer) if outer else None
    if isinstance(data.get("text"), str):
        return NestedEncoded(text=data["text"], outer_expiry=outer)
    if outer:
        return InlineExpiry(value=outer)
    return AbsentExpiry()


def decode_nested(data: Dict[str, Any]) -> Dict[str, Any]:
    """The decoded sub-document if ``data["text"]`` holds JSON, else ``data``."""
    if isinstance(data, dict) and isinstance(data.get("text"), str):
        try:
            parsed = json.loads(data["text"])
        except ValueError:
            return data
        if isinstance(parsed, dict):
            return parsed
    return data if isinstance(data, dict) else {}


def parse_month_year(value: str) -> Optional[datetime]:
    """``MM/YY`` (or ``MM/YYYY``) → midnight UTC on the last day of that month."""
    parts = str(value).strip().split("/")
    if len(parts) != 2:
        return None
    try:
        month = int(parts[0])
        year = int(parts[1])
    except ValueError:
        return None
    if not 1 <= month <= 12:
        return None
    if year < 100:
        year += 2000
    try:
        last_day = calendar.monthrange(year, month)[1]
        return datetime(year, month, last_day, tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None


def _from_month_year(value: Optional[str]) -> Optional[ResolvedExpiry]:
    if not value:
        return None
    expiry = parse_month_year(value)
    return ResolvedExpiry(expiry, value) if expiry else None


def normalize_expiry(
    source: ExpirySource, expires_at: Optional[str] = None
) -> Optional[ResolvedExpiry]:
    """Single place where an expiry instant is derived from any payload shape."""
    resolved = None
    if isinstance(source, NestedEncoded):
        try:
            nested = json.loads(source.text)
        except ValueError:
            nested = None
        nested_expiry = nested.get("expiry") if isinstance(nested, dict) else None
        resolved = _from_month_year(str(nested_expiry) if nested_expiry else None)
        if resolved is None:
            resolved = _from_month_year(source.outer_expiry)
    elif isinstance(source, InlineExpiry):
        resolved = _from_month_year(source.value)

    if resolved is None and expires_at:
        try:
            timestamp = parse_iso(expires_at)
        except ValueError:
            timestamp = None
        if timestamp is not None:
            resolved = ResolvedExpiry(timestamp)
    return resolved


def days_until(expiry: datetime, now: datetime) -> int:
    """Whole days until expiry, rounded up (a partial day counts as a day)."""
    return math.ceil((expiry - now).total_seconds() / 86400)


def severity_for(days: int) -> str:
    if days <= 0:
        return "critical"
    if days <= 7:
        return "high"
    if days <= 14:
        return "medium"
    return "low"


def format_date(value: datetime) -> str:
    """Display form, e.g. 2/28/2025."""
    return f"{value.month}/{value.day}/{value.year}"


# ── Alert composition ────────────────────────────────────────────────

CARD_TYPES = ("credit", "debit")


@dataclass
class ExpiryAlertMetadata:
    """Metadata stored on every expiry alert."""

    card_type: str
    is_card: bool
    item_title: str
    item_type: str
    days_until_expiry: int
    category: str
    expiry_date_string: str
    expiry_formatted: Optional[str]

    def to_dict(self) -> dict:
        return {
            "card_type": self.card_type,
            "is_card": self.is_card,
            "item_title": self.item_title,
            "item_type": self.item_type,
            "days_until_expiry": self.days_until_expiry,
            "category": self.category,
            "expiry_date_string": self.expiry_date_string,
            "expiry_formatted": self.expiry_formatted,
        }


def card_type_for(item, payload: Dict[str, Any]) -> str:
    """What kind of thing is expiring, lower-cased ('credit', 'boarding', ...)."""
    if item.item_type == "passwords":
        return "password"
    if item.item_type == "documents":
        return "document"
    for candidate in (payload.get("type"), item.data.get("type"), item.category, item.qr_type):
        if candidate:
            return str(candidate).lower()
    return "item"


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def compose_expiry_alert(item, expiry: ResolvedExpiry, now: datetime) -> dict:
    """Alert fields (type, severity, wording, action, metadata) for one item."""
    payload = decode_nested(item.data)
    card_type = card_type_for(item, payload)
    days = days_until(expiry.expiry_date, now)
    severity = severity_for(days)
    date_string = format_date(expiry.expiry_date)
    is_card = card_type in CARD_TYPES

    if item.item_type == "passwords":
        alert_type, icon = "password_expiry", "🔑"
        action_url, action_label = f"/dashboard/passwords/{item.item_id}", "Update Password"
    elif item.item_type == "documents":
        alert_type, icon = "document_expiry", "📄"
        action_url, action_label = f"/dashboard/documents/{item.item_id}", "Renew Document"
    else:
        alert_type, icon = ("card_expiry", "💳") if is_card else ("pass_expiry", "🎫")
        action_url = "/features/qr-scan"
        action_label = "Renew Now" if days <= 0 else "View Card"

    if days <= 0:
        ago = abs(days)
        when = "today" if ago == 0 else f"{ago} day{_plural(ago)} ago"
        title = f"{icon} {item.title} EXPIRED"
        message = (f'Your {card_type} "{item.title}" expired {when} on {date_string}. '
                   f"Immediate renewal required!")
    elif days <= 7:
        title = f"{icon} {item.title} Expiring Very Soon"
        message = (f'Your {card_type} "{item.title}" will expire in {days} '
                   f"day{_plural(days)} on {date_string}")
    else:
        title = f"{icon} {item.title} Expiring Soon"
        message = f'Your {card_type} "{item.title}" will expire in {days} days on {date_string}'

    metadata = ExpiryAlertMetadata(
        card_type=card_type,
        is_card=is_card,
        item_title=item.title,
        item_type=item.item_type,
        days_until_expiry=days,
        category=item.category,
        expiry_date_string=date_string,
        expiry_formatted=expiry.expiry_formatted,
    )
    return {
        "alert_type": alert_type,
        "severity": severity,
        "title": title,
        "message": message,
        "action_url": action_url,
        "action_label": action_label,
        "expiry_date": expiry.expiry_date.isoformat(),
        "metadata": metadata.to_dict(),
    }

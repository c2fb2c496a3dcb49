"""PassVault - Expiration alerts (deduplicated, per vault item)."""

from .alert_database import ALERT_TYPES, SEVERITIES, AlertDatabase
from .expiration_engine import RELATED_TO, ExpirationAlertEngine
from .expiry import (
    AbsentExpiry,
    ExpiryAlertMetadata,
    InlineExpiry,
    NestedEncoded,
    classify_expiry_source,
    normalize_expiry,
)

__all__ = [
    "ALERT_TYPES",
    "SEVERITIES",
    "AlertDatabase",
    "ExpirationAlertEngine",
    "RELATED_TO",
    "AbsentExpiry",
    "ExpiryAlertMetadata",
    "InlineExpiry",
    "NestedEncoded",
    "classify_expiry_source",
    "normalize_expiry",
]

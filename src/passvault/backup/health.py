"""Backup health scoring.

Per-backup score starts at 100 and loses points for: a failed run,
stale or missing verification, weak encryption, a failed/corrupted
verification and the age of the backup. The owner-level rating averages
the scores of the ten most recent completed, restorable backups.

Pure functions over backup record dicts; ``now`` is injectable for tests.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..core.db import parse_iso

HEALTHY_SCORE = 80
OVERALL_SAMPLE_SIZE = 10

_RATINGS = (
    (90, "Excellent", "Your backups are in great shape! Keep up the good work."),
    (75, "Good", "Your backups are healthy. Consider verifying older backups."),
    (60, "Fair", "Some backups need attention. Run a verification check."),
    (40, "Poor", "Several backups have issues. Create a new backup soon."),
    (0, "Critical", "Your backup health is critical! Create a new backup immediately."),
)


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 86400


def calculate_health_score(backup: dict, now: Optional[datetime] = None) -> int:
    """Health score (0-100) of one backup record."""
    now = now or datetime.now(timezone.utc)
    score = 100

    if backup.get("status") == "failed":
        score -= 50

    last_verified = parse_iso(backup.get("last_verified"))
    if last_verified is None:
        score -= 15
    else:
        days = _days_between(now, last_verified)
        if days > 30:
            score -= 20
        elif days > 14:
            score -= 10

    if backup.get("encryption_type") != "AES-256":
        score -= 10

    verification = backup.get("verification_status")
    if verification == "failed":
        score -= 30
    elif verification == "corrupted":
        score -= 70

    started = parse_iso(backup.get("started_at"))
    if started is not None:
        age = _days_between(now, started)
        if age > 60:
            score -= 15
        elif age > 30:
            score -= 5

    return max(0, min(100, score))


def overall_health(backups: Iterable[dict], now: Optional[datetime] = None) -> dict:
    """Owner-level rating from the most recent completed, restorable backups.

    ``backups`` may be any owner's history; filtering and ordering happen here.
    """
    now = now or datetime.now(timezone.utc)
    sample: List[dict] = sorted(
        (b for b in backups if b.get("status") == "completed" and b.get("restorable")),
        key=lambda b: b.get("started_at") or "",
        reverse=True,
    )[:OVERALL_SAMPLE_SIZE]

    if not sample:
        return {
            "score": 0,
            "rating": "No Backups",
            "recommendation": "Create your first backup to protect your data",
            "metrics": {
                "total_backups": 0,
                "healthy_backups": 0,
                "avg_age_days": 0,
                "last_backup_days": None,
            },
        }

    scores = [calculate_health_score(b, now) for b in sample]
    avg_score = round(sum(scores) / len(scores))
    ages = [_days_between(now, parse_iso(b["started_at"])) for b in sample]

    rating, recommendation = _RATINGS[-1][1:]
    for threshold, name, text in _RATINGS:
        if avg_score >= threshold:
            rating, recommendation = name, text
            break

    return {
        "score": avg_score,
        "rating": rating,
        "recommendation": recommendation,
        "metrics": {
            "total_backups": len(sample),
            "healthy_backups": sum(1 for s in scores if s >= HEALTHY_SCORE),
            "avg_age_days": round(sum(ages) / len(ages)),
            "last_backup_days": int(ages[0]),
        },
    }

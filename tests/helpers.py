"""Builders shared by unit and API tests"""
from datetime import datetime, timedelta, timezone

from barber_loyalty.models import AchievementDefinition, LedgerEntry, LedgerEntryKind

# Wednesday; the ISO week started Monday 2024-06-10
FIXED_NOW = datetime(2024, 6, 12, 15, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# Builders
# ============================================================================

def make_visits(count: int, start: datetime = None, step: timedelta = timedelta(hours=1), clients=None, **metadata):
    """
    Build `count` visit entries ending before FIXED_NOW

    Args:
        count: Number of visits
        start: First timestamp (defaults to FIXED_NOW - count * step)
        step: Gap between visits
        clients: Client IDs to cycle through (one client per visit when omitted)
    """
    start = start or FIXED_NOW - step * count
    entries = []
    for i in range(count):
        client_id = clients[i % len(clients)] if clients else f"client-{i}"
        entries.append(LedgerEntry(
            timestamp=start + step * i,
            kind=LedgerEntryKind.VISIT,
            related_client_id=client_id,
            metadata=dict(metadata),
        ))
    return entries


def make_definition(**overrides) -> AchievementDefinition:
    """Count-of-visits definition with overridable fields"""
    data = {
        "id": "visits-10",
        "title": "Ten Visits",
        "category": "visits",
        "requirement_type": "count",
        "requirement_value": 10,
        "tier": "bronze",
        "points": 10,
    }
    data.update(overrides)
    return AchievementDefinition.model_validate(data)


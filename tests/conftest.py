"""Global test fixtures and utilities for loyalty engine tests"""
import pytest
from datetime import datetime, timezone

from barber_loyalty.engine.catalog import InMemoryCatalogStore
from barber_loyalty.engine.redemption_engine import RedemptionEngine
from barber_loyalty.engine.redemption_store import InMemoryRedemptionStore
from barber_loyalty.integrations.ledger import InMemoryVisitLedger
from barber_loyalty.models import (
    Subject,
    SubjectKind,
)
from barber_loyalty.services.loyalty_service import LoyaltyService
from tests.helpers import FIXED_NOW, make_definition, make_visits


# ============================================================================
# Clock & Subjects
# ============================================================================

@pytest.fixture
def fixed_now():
    """Frozen evaluation instant"""
    return FIXED_NOW


@pytest.fixture
def clock():
    """Engine/service clock returning FIXED_NOW"""
    return lambda: FIXED_NOW


@pytest.fixture
def barber():
    """Barber who joined a year and a half before FIXED_NOW"""
    return Subject(
        id="barber-1",
        kind=SubjectKind.BARBER,
        name="Marco",
        started_at=datetime(2023, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def second_barber():
    """Barber who joined after `barber`"""
    return Subject(
        id="barber-2",
        kind=SubjectKind.BARBER,
        name="Luis",
        started_at=datetime(2023, 6, 1, tzinfo=timezone.utc),
    )


# ============================================================================
# Catalog Fixtures
# ============================================================================

@pytest.fixture
def visits_definition():
    """Non-repeatable: 10 visits"""
    return make_definition()


@pytest.fixture
def repeatable_definition():
    """Repeatable up to 3 times: 5 visits per cycle"""
    return make_definition(
        id="loyal-5",
        title="Five More Visits",
        requirement_value=5,
        is_repeatable=True,
        max_completions=3,
        reward={"type": "discount", "value": "10%"},
    )


@pytest.fixture
def handoff_definition():
    """Physical gift that needs a redemption request before confirmation"""
    return make_definition(
        id="gift-3",
        title="Three Visits Gift",
        requirement_value=3,
        reward={"type": "gift", "value": "Pomade", "requires_handoff": True},
    )


@pytest.fixture
def retention_definition():
    """Quality: 50% client retention"""
    return make_definition(
        id="retention-50",
        title="Client Keeper",
        category="quality",
        requirement_type="percentage",
        requirement_value=50,
        metric="client_retention",
        tier="gold",
        points=50,
    )


@pytest.fixture
def catalog(visits_definition, repeatable_definition, handoff_definition, retention_definition):
    """In-memory catalog with the standard definitions"""
    return InMemoryCatalogStore([
        visits_definition,
        repeatable_definition,
        handoff_definition,
        retention_definition,
    ])


# ============================================================================
# Engine & Service Fixtures
# ============================================================================

@pytest.fixture
def redemption_store():
    """Fresh in-memory redemption store"""
    return InMemoryRedemptionStore()


@pytest.fixture
def engine(redemption_store, catalog, clock):
    """RedemptionEngine over in-memory collaborators"""
    return RedemptionEngine(redemption_store, catalog, clock=clock)


@pytest.fixture
def ledger(barber, second_barber):
    """Ledger with two barbers: 12 visits and 4 visits"""
    return InMemoryVisitLedger(
        subjects=[barber, second_barber],
        histories={
            barber.id: make_visits(12),
            second_barber.id: make_visits(4),
        },
    )


@pytest.fixture
def service(ledger, catalog, engine, clock):
    """LoyaltyService over in-memory collaborators"""
    return LoyaltyService(ledger, catalog, engine, subject_timeout=1.0, clock=clock)

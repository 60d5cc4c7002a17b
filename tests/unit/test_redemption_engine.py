"""Unit tests for the redemption engine (barber_loyalty/engine/redemption_engine.py)"""
import asyncio
import gc
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from barber_loyalty.engine.catalog import InMemoryCatalogStore
from barber_loyalty.engine.redemption_engine import RedemptionEngine
from barber_loyalty.engine.redemption_store import InMemoryRedemptionStore
from barber_loyalty.exceptions import (
    CompletionLimitExceeded,
    InvalidStateError,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)
from barber_loyalty.models import RedemptionRecord, RedemptionState
from tests.helpers import FIXED_NOW, make_definition, make_visits


# ============================================================================
# Automatic Transitions
# ============================================================================

@pytest.mark.asyncio
async def test_first_evaluation_creates_locked_record(engine, barber, visits_definition):
    progress = await engine.evaluate(barber, visits_definition, make_visits(3))

    record = await engine.get_record(barber.id, visits_definition.id)
    assert progress.is_earned is False
    assert record.state == RedemptionState.LOCKED
    assert record.version == 1
    assert await engine.get_history(barber.id, visits_definition.id) == []


@pytest.mark.asyncio
async def test_locked_to_earned_when_requirement_met(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(3))
    progress = await engine.evaluate(barber, visits_definition, make_visits(12))

    record = await engine.get_record(barber.id, visits_definition.id)
    history = await engine.get_history(barber.id, visits_definition.id)
    assert progress.is_earned is True
    assert progress.progress_percentage == 100
    assert record.state == RedemptionState.EARNED
    assert record.earned_at == FIXED_NOW
    assert [(t.from_state, t.to_state) for t in history] == [
        (RedemptionState.LOCKED, RedemptionState.EARNED)
    ]


@pytest.mark.asyncio
async def test_reevaluating_earned_record_is_stable(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))
    await engine.evaluate(barber, visits_definition, make_visits(12))

    record = await engine.get_record(barber.id, visits_definition.id)
    history = await engine.get_history(barber.id, visits_definition.id)
    assert record.state == RedemptionState.EARNED
    assert len(history) == 1


@pytest.mark.asyncio
async def test_evaluation_never_revokes_earned_state(engine, barber, visits_definition):
    """Lost progress (e.g. corrected ledger) does not move earned back to locked"""
    await engine.evaluate(barber, visits_definition, make_visits(12))
    progress = await engine.evaluate(barber, visits_definition, make_visits(2))

    record = await engine.get_record(barber.id, visits_definition.id)
    assert progress.is_earned is False
    assert record.state == RedemptionState.EARNED


@pytest.mark.asyncio
async def test_prerequisites_read_from_store(engine, barber, visits_definition):
    dependent = make_definition(id="visits-20", requirement_value=1, prerequisites=["visits-10"])

    blocked = await engine.evaluate(barber, dependent, make_visits(5))
    await engine.evaluate(barber, visits_definition, make_visits(12))
    unlocked = await engine.evaluate(barber, dependent, make_visits(12))

    assert blocked.is_earned is False
    assert unlocked.is_earned is True


@pytest.mark.asyncio
async def test_concurrent_automatic_transition_loses_quietly(barber, visits_definition, catalog, clock):
    store = InMemoryRedemptionStore()
    engine = RedemptionEngine(store, catalog, clock=clock)
    store.save = AsyncMock(side_effect=StaleRecordError(message="changed", expected_version=0))

    progress = await engine.evaluate(barber, visits_definition, make_visits(12))

    assert progress.is_earned is True


# ============================================================================
# Confirm Redemption
# ============================================================================

@pytest.mark.asyncio
async def test_twelve_visits_redeem_once(engine, barber, visits_definition):
    """12 visits against 10: earned, redeemed, and a second confirm fails"""
    progress = await engine.evaluate(barber, visits_definition, make_visits(12))
    assert progress.is_earned is True
    assert progress.progress_percentage == 100

    record = await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1", notes="Free cut")

    assert record.state == RedemptionState.REDEEMED
    assert record.redeemed_at == FIXED_NOW
    assert record.redeemed_by == "manager-1"
    assert record.notes == "Free cut"
    assert record.completion_count == 1

    with pytest.raises(InvalidStateError) as exc_info:
        await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")

    assert exc_info.value.current_state == "redeemed"


@pytest.mark.asyncio
async def test_confirm_on_locked_record_fails(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(2))

    with pytest.raises(InvalidStateError) as exc_info:
        await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")

    assert exc_info.value.current_state == "locked"
    assert set(exc_info.value.allowed_states) == {"earned", "pending_redemption"}


@pytest.mark.asyncio
async def test_confirm_without_record_fails(engine, barber, visits_definition):
    with pytest.raises(InvalidStateError):
        await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")


@pytest.mark.asyncio
async def test_confirm_unknown_achievement(engine, barber):
    with pytest.raises(RecordNotFoundError):
        await engine.confirm_redemption(barber.id, "no-such-achievement", actor="manager-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("actor", ["", "   "])
async def test_confirm_requires_actor(engine, barber, visits_definition, actor):
    await engine.evaluate(barber, visits_definition, make_visits(12))

    with pytest.raises(ValidationError):
        await engine.confirm_redemption(barber.id, visits_definition.id, actor=actor)


@pytest.mark.asyncio
async def test_confirm_at_completion_limit(barber, clock):
    """An earned record whose count already reached the bound cannot be redeemed"""
    definition = make_definition(id="capped", requirement_value=1, is_repeatable=True, max_completions=2)
    store = InMemoryRedemptionStore()
    engine = RedemptionEngine(store, InMemoryCatalogStore([definition]), clock=clock)
    await store.save(
        RedemptionRecord(
            subject_id=barber.id,
            achievement_id=definition.id,
            state=RedemptionState.EARNED,
            completion_count=2,
        ),
        [],
    )

    with pytest.raises(CompletionLimitExceeded) as exc_info:
        await engine.confirm_redemption(barber.id, definition.id, actor="manager-1")

    assert exc_info.value.completion_count == 2
    assert exc_info.value.max_completions == 2


@pytest.mark.asyncio
async def test_concurrent_confirms_redeem_exactly_once(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))

    results = await asyncio.gather(
        *(engine.confirm_redemption(barber.id, visits_definition.id, actor=f"manager-{i}") for i in range(5)),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, RedemptionRecord)]
    failures = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(successes) == 1
    assert len(failures) == 4
    record = await engine.get_record(barber.id, visits_definition.id)
    assert record.completion_count == 1


@pytest.mark.asyncio
async def test_confirm_records_authorizing_client(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))

    await engine.confirm_redemption(
        barber.id, visits_definition.id, actor="manager-1", authorized_by="pos-terminal",
    )

    history = await engine.get_history(barber.id, visits_definition.id)
    assert [(t.to_state, t.actor, t.authorized_by) for t in history] == [
        (RedemptionState.EARNED, None, None),
        (RedemptionState.REDEEMED, "manager-1", "pos-terminal"),
    ]


@pytest.mark.asyncio
async def test_transition_locks_are_released(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))
    await asyncio.gather(
        *(engine.confirm_redemption(barber.id, visits_definition.id, actor=f"manager-{i}") for i in range(3)),
        return_exceptions=True,
    )
    gc.collect()

    assert len(engine._locks) == 0


@pytest.mark.asyncio
async def test_stale_write_on_confirm_surfaces_as_invalid_state(engine, redemption_store, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))
    redemption_store.save = AsyncMock(side_effect=StaleRecordError(message="changed", expected_version=2))

    with pytest.raises(InvalidStateError):
        await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")


# ============================================================================
# Handoff Rewards
# ============================================================================

@pytest.mark.asyncio
async def test_handoff_reward_requires_request_first(engine, barber, handoff_definition):
    await engine.evaluate(barber, handoff_definition, make_visits(4))

    with pytest.raises(InvalidStateError):
        await engine.confirm_redemption(barber.id, handoff_definition.id, actor="manager-1")

    pending = await engine.request_redemption(barber.id, handoff_definition.id, actor="front-desk")
    assert pending.state == RedemptionState.PENDING_REDEMPTION
    assert pending.requested_by == "front-desk"
    assert pending.requested_at == FIXED_NOW

    redeemed = await engine.confirm_redemption(barber.id, handoff_definition.id, actor="manager-1")
    assert redeemed.state == RedemptionState.REDEEMED

    history = await engine.get_history(barber.id, handoff_definition.id)
    assert [t.to_state for t in history] == [
        RedemptionState.EARNED,
        RedemptionState.PENDING_REDEMPTION,
        RedemptionState.REDEEMED,
    ]
    assert history[1].actor == "front-desk"
    assert history[2].actor == "manager-1"


@pytest.mark.asyncio
async def test_request_requires_earned_state(engine, barber, handoff_definition):
    await engine.evaluate(barber, handoff_definition, make_visits(1))

    with pytest.raises(InvalidStateError):
        await engine.request_redemption(barber.id, handoff_definition.id, actor="front-desk")


@pytest.mark.asyncio
async def test_pending_record_is_still_satisfied(engine, barber, handoff_definition):
    await engine.evaluate(barber, handoff_definition, make_visits(4))
    await engine.request_redemption(barber.id, handoff_definition.id, actor="front-desk")

    assert handoff_definition.id in await engine.satisfied_achievements(barber.id)


# ============================================================================
# Repeatable Achievements
# ============================================================================

@pytest.mark.asyncio
async def test_repeatable_starts_new_cycle_after_redemption(engine, barber, repeatable_definition):
    first_cycle = make_visits(6, start=FIXED_NOW - timedelta(days=10), step=timedelta(hours=1))
    await engine.evaluate(barber, repeatable_definition, first_cycle)
    await engine.confirm_redemption(barber.id, repeatable_definition.id, actor="manager-1")

    # Same history: nothing new since the redemption
    progress = await engine.evaluate(barber, repeatable_definition, first_cycle)
    record = await engine.get_record(barber.id, repeatable_definition.id)
    assert progress.current_value == 0
    assert record.state == RedemptionState.REDEEMED

    # Redemption happened at FIXED_NOW; later visits start the next cycle
    later = make_visits(5, start=FIXED_NOW + timedelta(minutes=1), step=timedelta(minutes=1))
    progress = await engine.evaluate(
        barber, repeatable_definition, first_cycle + later, now=FIXED_NOW + timedelta(hours=1)
    )
    record = await engine.get_record(barber.id, repeatable_definition.id)
    assert progress.is_earned is True
    assert record.state == RedemptionState.EARNED
    assert record.redeemed_at is None
    assert record.last_redeemed_at == FIXED_NOW
    assert record.completion_count == 1

    history = await engine.get_history(barber.id, repeatable_definition.id)
    assert history[-1].from_state == RedemptionState.REDEEMED
    assert history[-1].notes == "new cycle"


@pytest.mark.asyncio
async def test_repeatable_stops_at_max_completions(barber):
    definition = make_definition(id="twice", requirement_value=1, is_repeatable=True, max_completions=2)
    store = InMemoryRedemptionStore()
    now = {"value": FIXED_NOW}
    engine = RedemptionEngine(store, InMemoryCatalogStore([definition]), clock=lambda: now["value"])
    history = []

    for cycle in range(3):
        now["value"] = FIXED_NOW + timedelta(hours=cycle)
        history += make_visits(1, start=now["value"] - timedelta(minutes=1))
        await engine.evaluate(barber, definition, history, now=now["value"])
        record = await engine.get_record(barber.id, definition.id)
        if record.state == RedemptionState.EARNED:
            await engine.confirm_redemption(barber.id, definition.id, actor="manager-1")

    record = await engine.get_record(barber.id, definition.id)
    assert record.completion_count == 2
    assert record.state == RedemptionState.REDEEMED


@pytest.mark.asyncio
async def test_non_repeatable_never_restarts(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))
    await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")

    await engine.evaluate(barber, visits_definition, make_visits(30), now=FIXED_NOW + timedelta(days=1))

    record = await engine.get_record(barber.id, visits_definition.id)
    assert record.state == RedemptionState.REDEEMED
    assert record.completion_count == 1


# ============================================================================
# Deactivation
# ============================================================================

@pytest.mark.asyncio
async def test_deactivated_definition_keeps_redeemed_record(engine, barber, visits_definition):
    await engine.evaluate(barber, visits_definition, make_visits(12))
    await engine.confirm_redemption(barber.id, visits_definition.id, actor="manager-1")

    deactivated = visits_definition.model_copy(update={"is_active": False})
    progress = await engine.evaluate(barber, deactivated, make_visits(12))

    record = await engine.get_record(barber.id, visits_definition.id)
    assert progress.is_earned is False
    assert record.state == RedemptionState.REDEEMED
    assert await engine.list_records_for_achievement(visits_definition.id) == [record]

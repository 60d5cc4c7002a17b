"""Unit tests for the HTTP ledger and catalog clients (httpx.MockTransport)"""
import asyncio
import json
import pytest
from datetime import date, datetime, timezone

import httpx

from barber_loyalty.exceptions import DataUnavailable
from barber_loyalty.integrations.catalog_client import HttpCatalogStore
from barber_loyalty.integrations.ledger import HttpVisitLedger
from barber_loyalty.models import SubjectKind
from barber_loyalty.resilience import retry

BASE_URL = "http://ledger.test"


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Retries happen immediately"""
    monkeypatch.setattr(retry, "calculate_backoff", lambda attempt, base_delay=0: 0.0)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def ledger_with(handler, **kwargs) -> HttpVisitLedger:
    return HttpVisitLedger(base_url=BASE_URL, client=mock_client(handler), **kwargs)


# ============================================================================
# Ledger
# ============================================================================

@pytest.mark.asyncio
async def test_get_subject():
    def handler(request):
        assert request.url.path == "/subjects/barber-1"
        return httpx.Response(200, json={
            "id": "barber-1",
            "kind": "barber",
            "name": "Marco",
            "started_at": "2023-01-01T00:00:00Z",
        })

    subject = await ledger_with(handler).get_subject("barber-1")

    assert subject.name == "Marco"
    assert subject.started_at == datetime(2023, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_get_subject_not_found():
    ledger = ledger_with(lambda request: httpx.Response(404))

    assert await ledger.get_subject("ghost") is None


@pytest.mark.asyncio
async def test_list_subjects_skips_malformed_and_inactive():
    def handler(request):
        assert request.url.params["kind"] == "barber"
        return httpx.Response(200, json={"subjects": [
            {"id": "barber-2", "name": "Luis"},
            {"id": "", "name": "Broken"},
            {"id": "barber-3", "is_active": False},
            {"id": "client-1", "kind": "client"},
        ]})

    subjects = await ledger_with(handler).list_subjects(SubjectKind.BARBER)

    assert [s.id for s in subjects] == ["barber-2"]


@pytest.mark.asyncio
async def test_get_history_sorts_and_skips_malformed():
    seen = {}

    def handler(request):
        seen["since"] = request.url.params.get("since")
        return httpx.Response(200, json=[
            {"timestamp": "2024-06-11T10:00:00Z", "related_client_id": "b"},
            {"timestamp": "not-a-date"},
            {"timestamp": "2024-06-10T10:00:00Z", "related_client_id": "a"},
        ])

    since = datetime(2024, 6, 1, tzinfo=timezone.utc)
    entries = await ledger_with(handler).get_history("barber-1", since=since)

    assert [e.related_client_id for e in entries] == ["a", "b"]
    assert seen["since"] == since.isoformat()


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[])

    entries = await ledger_with(handler, max_retries=2).get_history("barber-1")

    assert entries == []
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_persistent_failure_raises_data_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    with pytest.raises(DataUnavailable) as exc_info:
        await ledger_with(handler, max_retries=2).get_history("barber-1")

    assert exc_info.value.source == "ledger"
    assert exc_info.value.subject_id == "barber-1"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400)

    with pytest.raises(DataUnavailable):
        await ledger_with(handler, max_retries=3).list_subjects()

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_connection_error_raises_data_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DataUnavailable):
        await ledger_with(handler, max_retries=1).get_history("barber-1")


@pytest.mark.asyncio
async def test_invalid_json_raises_data_unavailable():
    ledger = ledger_with(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(DataUnavailable):
        await ledger.get_history("barber-1")


@pytest.mark.asyncio
async def test_unconfigured_ledger_raises_data_unavailable():
    ledger = HttpVisitLedger(base_url="", client=mock_client(lambda request: httpx.Response(200)))

    with pytest.raises(DataUnavailable):
        await ledger.get_subject("barber-1")


# ============================================================================
# Catalog
# ============================================================================

CATALOG_PAYLOAD = {"achievements": [
    {
        "id": "visits-10",
        "title": "Ten Visits",
        "category": "visits",
        "requirement_type": "count",
        "requirement_value": 10,
    },
    {
        "id": "broken",
        "title": "Broken",
        "category": "visits",
        "requirement_type": "count",
        "requirement_value": 0,
    },
]}


@pytest.mark.asyncio
async def test_catalog_loads_and_caches():
    calls = []

    def handler(request):
        calls.append(request)
        assert request.url.path == "/achievements"
        return httpx.Response(200, content=json.dumps(CATALOG_PAYLOAD))

    catalog = HttpCatalogStore(base_url=BASE_URL, client=mock_client(handler))

    active = await catalog.list_active_definitions(date(2024, 6, 12))
    definition = await catalog.get_definition("visits-10")

    assert [d.id for d in active] == ["visits-10"]
    assert definition.requirement_value == 10
    assert len(catalog.load_errors) == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_catalog_refreshes_after_ttl():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=CATALOG_PAYLOAD["achievements"])

    catalog = HttpCatalogStore(base_url=BASE_URL, client=mock_client(handler), cache_ttl=60)

    await catalog.get_definition("visits-10")
    catalog._loaded_at -= 120
    await catalog.get_definition("visits-10")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    calls = []

    async def handler(request):
        calls.append(request)
        await asyncio.sleep(0.01)
        return httpx.Response(200, json=CATALOG_PAYLOAD["achievements"])

    catalog = HttpCatalogStore(base_url=BASE_URL, client=mock_client(handler))

    results = await asyncio.gather(*(catalog.get_definition("visits-10") for _ in range(5)))

    assert [d.id for d in results] == ["visits-10"] * 5
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_failed_refresh_serves_cached_catalog():
    calls = []
    responses = [httpx.Response(200, json=CATALOG_PAYLOAD["achievements"])]

    def handler(request):
        calls.append(request)
        return responses.pop(0) if responses else httpx.Response(503)

    catalog = HttpCatalogStore(base_url=BASE_URL, client=mock_client(handler), max_retries=0, cache_ttl=60)

    await catalog.get_definition("visits-10")
    catalog._loaded_at -= 120
    stale = await catalog.get_definition("visits-10")
    again = await catalog.get_definition("visits-10")

    assert stale.id == "visits-10"
    assert again.id == "visits-10"
    # The failed refresh is not retried until the stale window passes
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_failed_first_load_raises():
    catalog = HttpCatalogStore(
        base_url=BASE_URL,
        client=mock_client(lambda request: httpx.Response(503)),
        max_retries=0,
    )

    with pytest.raises(DataUnavailable):
        await catalog.list_active_definitions(date(2024, 6, 12))


@pytest.mark.asyncio
async def test_catalog_failure_raises_data_unavailable():
    catalog = HttpCatalogStore(
        base_url=BASE_URL,
        client=mock_client(lambda request: httpx.Response(502)),
        max_retries=0,
    )

    with pytest.raises(DataUnavailable) as exc_info:
        await catalog.refresh()

    assert exc_info.value.source == "catalog"


@pytest.mark.asyncio
async def test_catalog_rejects_non_list_payload():
    catalog = HttpCatalogStore(base_url=BASE_URL, client=mock_client(lambda request: httpx.Response(200, json="nope")))

    with pytest.raises(DataUnavailable):
        await catalog.refresh()

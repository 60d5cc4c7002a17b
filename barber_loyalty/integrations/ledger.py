"""
Visit Ledger readers

The ledger (visits, reward redemptions, milestones per subject) is owned by
the surrounding platform. The engine only reads it:
- get_subject(subject_id)
- list_subjects(kind)
- get_history(subject_id, since=None)

Read failures surface as DataUnavailable; individual malformed entries are
skipped so one bad row never hides a subject's whole history.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from barber_loyalty import config
from barber_loyalty.exceptions import DataUnavailable, wrap_external_exception
from barber_loyalty.models.visit import LedgerEntry, Subject, SubjectKind, as_utc
from barber_loyalty.observability import metrics
from barber_loyalty.resilience.retry import retry_with_backoff

logger = logging.getLogger(__name__)

API_TIMEOUT = 5.0  # seconds per upstream request


class VisitLedger(Protocol):
    """Read-only access to subjects and their visit history"""

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        ...

    async def list_subjects(self, kind: SubjectKind = SubjectKind.BARBER) -> list[Subject]:
        ...

    async def get_history(self, subject_id: str, since: Optional[datetime] = None) -> list[LedgerEntry]:
        ...


class InMemoryVisitLedger:
    """Ledger held in process memory (tests, embedding, seeded demos)"""

    def __init__(
        self,
        subjects: Iterable[Subject] = (),
        histories: Optional[dict[str, list]] = None,
    ):
        self._subjects: dict[str, Subject] = {s.id: s for s in subjects}
        self._histories: dict[str, list[LedgerEntry]] = {}
        for subject_id, entries in (histories or {}).items():
            for entry in entries:
                self.record(subject_id, entry)

    def add_subject(self, subject: Subject) -> None:
        self._subjects[subject.id] = subject

    def record(self, subject_id: str, entry) -> LedgerEntry:
        """Append an entry (model or dict) to a subject's history"""
        if not isinstance(entry, LedgerEntry):
            entry = LedgerEntry.model_validate(entry)
        self._histories.setdefault(subject_id, []).append(entry)
        return entry

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        return self._subjects.get(subject_id)

    async def list_subjects(self, kind: SubjectKind = SubjectKind.BARBER) -> list[Subject]:
        return sorted(
            (s for s in self._subjects.values() if s.kind == kind and s.is_active),
            key=lambda s: s.id,
        )

    async def get_history(self, subject_id: str, since: Optional[datetime] = None) -> list[LedgerEntry]:
        since = as_utc(since)
        entries = self._histories.get(subject_id, [])
        if since is not None:
            entries = [e for e in entries if e.timestamp > since]
        return sorted(entries, key=lambda e: e.timestamp)


class HttpVisitLedger:
    """
    Ledger read over HTTP from the platform's visit service

    Endpoints (JSON):
    - GET {base_url}/subjects/{id}               -> subject object (404 = unknown)
    - GET {base_url}/subjects?kind=barber         -> list of subjects
    - GET {base_url}/subjects/{id}/history?since= -> list of ledger entries

    Transient failures are retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: str = config.LEDGER_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = config.LEDGER_MAX_RETRIES,
        timeout: float = API_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        """Subject by ID, None when the ledger does not know it"""
        response = await self._get(f"/subjects/{subject_id}", operation="get_subject", subject_id=subject_id, allow_404=True)
        if response is None:
            return None

        payload = self._json(response, operation="get_subject", subject_id=subject_id)
        try:
            return Subject.model_validate(payload)
        except PydanticValidationError as e:
            raise DataUnavailable(
                message=f"Ledger returned a malformed subject for {subject_id}",
                source="ledger",
                subject_id=subject_id,
                operation="get_subject",
                cause=e,
            )

    async def list_subjects(self, kind: SubjectKind = SubjectKind.BARBER) -> list[Subject]:
        """Active subjects of a kind; malformed rows are skipped"""
        response = await self._get("/subjects", operation="list_subjects", params={"kind": kind.value})
        payload = self._json(response, operation="list_subjects")

        subjects = []
        for item in _as_list(payload, "subjects"):
            try:
                subject = Subject.model_validate(item)
            except PydanticValidationError:
                logger.warning(f"Skipping malformed subject from ledger: {item!r}")
                continue
            if subject.kind == kind and subject.is_active:
                subjects.append(subject)
        return subjects

    async def get_history(self, subject_id: str, since: Optional[datetime] = None) -> list[LedgerEntry]:
        """Subject's ledger entries after `since`; malformed entries are skipped"""
        params = {}
        if since is not None:
            params["since"] = as_utc(since).isoformat()

        response = await self._get(
            f"/subjects/{subject_id}/history",
            operation="get_history",
            subject_id=subject_id,
            params=params,
        )
        payload = self._json(response, operation="get_history", subject_id=subject_id)

        entries = []
        skipped = 0
        for item in _as_list(payload, "entries"):
            try:
                entries.append(LedgerEntry.model_validate(item))
            except PydanticValidationError:
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} malformed ledger entries for subject {subject_id}")

        entries.sort(key=lambda e: e.timestamp)
        return entries

    # ============================================
    # Helper Functions
    # ============================================

    async def _get(
        self,
        path: str,
        operation: str,
        subject_id: Optional[str] = None,
        params: Optional[dict] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        if not self.base_url:
            raise DataUnavailable(
                message="LEDGER_BASE_URL is not configured",
                source="ledger",
                subject_id=subject_id,
                operation=operation,
            )

        async def fetch() -> httpx.Response:
            response = await self._client.get(f"{self.base_url}{path}", params=params)
            if allow_404 and response.status_code == 404:
                return response
            response.raise_for_status()
            return response

        try:
            with metrics.upstream_read_duration_seconds.labels(source="ledger").time():
                response = await retry_with_backoff(fetch, max_retries=self.max_retries)
        except httpx.HTTPError as e:
            raise wrap_external_exception(e, operation=operation, subject_id=subject_id, source="ledger")

        if allow_404 and response.status_code == 404:
            return None
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str, subject_id: Optional[str] = None):
        try:
            return response.json()
        except ValueError as e:
            raise DataUnavailable(
                message=f"Ledger returned invalid JSON for {operation}",
                source="ledger",
                subject_id=subject_id,
                operation=operation,
                cause=e,
            )


def _as_list(payload, key: str) -> list:
    """Accept a bare JSON list or an object wrapping it under `key`"""
    if isinstance(payload, dict):
        payload = payload.get(key, [])
    return payload if isinstance(payload, list) else []

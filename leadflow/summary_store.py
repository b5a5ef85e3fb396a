from __future__ import annotations

import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .json_file import read_json, write_json_atomic
from .models import StructuredSummary, SummaryRecord
from .retry import RetryPolicy


class SummaryStore:
    """Durable storage for structured summaries, one record per tenant/page/crawl generation."""

    def __init__(self, path: Optional[Path] = None, retry_policy: Optional[RetryPolicy] = None) -> None:
        # Keep configuration and preload persisted records if present.
        self._path = path
        self._retry = retry_policy or RetryPolicy(retries=2, base_delay=0.2, retry_on=(OSError,))
        self._records: Dict[str, SummaryRecord] = {}
        self._guard = threading.Lock()
        self._load()

    def _load(self) -> None:
        data = read_json(self._path)
        records = data.get("summaries", [])
        if not isinstance(records, list):
            return
        for raw in records:
            if isinstance(raw, dict):
                record = SummaryRecord.model_validate(raw)
                self._records[record.record_id] = record

    def _persist(self, records: Dict[str, SummaryRecord]) -> None:
        # Callers swap records into the cache only after this write succeeds.
        if not self._path:
            return
        ordered = sorted(records.values(), key=lambda r: (r.tenant_id, r.url, r.generation))
        payload = {"summaries": [record.model_dump(mode="json") for record in ordered]}
        self._retry.call(write_json_atomic, self._path, payload)

    def insert(self, tenant_id: str, url: str, summary: StructuredSummary) -> SummaryRecord:
        """Purpose: Store a summary as the next crawl generation for (tenant, url).
        Inputs/Outputs: Inputs are tenant, page URL and summary; returns the stored record.
        Side Effects / State: Writes to disk, then adds the record to the cache.
        Dependencies: _persist.
        Failure Modes: Persistent OSError propagates after retries and nothing is cached.
        If Removed: New crawls cannot be stored and the state machine sees stale pages.
        Testing Notes: Two inserts for one URL yield generations 1 and 2.
        """
        with self._guard:
            generations = [r.generation for r in self._records.values() if r.tenant_id == tenant_id and r.url == url]
            now = time.time()
            record = SummaryRecord(
                record_id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                url=url,
                generation=max(generations, default=0) + 1,
                created_at=now,
                updated_at=now,
                summary=summary.model_copy(deep=True),
            )
            staged = dict(self._records)
            staged[record.record_id] = record
            self._persist(staged)
            self._records = staged
            return record.model_copy(deep=True)

    def latest(self, tenant_id: str, url: str) -> Optional[SummaryRecord]:
        """Return the newest generation stored for the page, or None."""
        with self._guard:
            candidates = [r for r in self._records.values() if r.tenant_id == tenant_id and r.url == url]
            if not candidates:
                return None
            return max(candidates, key=lambda r: r.generation).model_copy(deep=True)

    def find_by_tenant(self, tenant_id: str, url: Optional[str] = None) -> List[SummaryRecord]:
        """Return copies of every record for the tenant, optionally restricted to one URL."""
        with self._guard:
            records = [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.tenant_id == tenant_id and (url is None or r.url == url)
            ]
        return sorted(records, key=lambda r: (r.url, r.generation))

    def update_many(self, records: Iterable[SummaryRecord]) -> int:
        """Write back modified records in a single persist; returns the number stored."""
        count = 0
        with self._guard:
            now = time.time()
            staged = dict(self._records)
            for record in records:
                staged[record.record_id] = record.model_copy(deep=True, update={"updated_at": now})
                count += 1
            if count:
                self._persist(staged)
                self._records = staged
        return count

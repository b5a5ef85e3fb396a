from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .json_file import read_json, write_json_atomic
from .models import AlertRecord

logger = logging.getLogger("leadflow.alerts")


class AlertLog:
    """Persisted registry of out-of-band sales alerts for audit and follow-up."""

    def __init__(self, path: Optional[Path] = None) -> None:
        """Purpose: Initialize the alert log and load prior alerts from disk.
        Inputs/Outputs: Input is an optional Path; no return value.
        Side Effects / State: Loads alerts into an in-memory list.
        Dependencies: read_json; uses JSON file on disk.
        Failure Modes: JSON decode errors are ignored, leaving an empty list.
        If Removed: High-risk selections and completed handoffs reach nobody.
        Testing Notes: Ensure a dispatched alert is persisted and reloaded.
        """
        # Keep the backing file path and hydrate cached alerts.
        self._path = path
        self._alerts: List[AlertRecord] = []
        self._guard = threading.Lock()
        self._load()

    def _load(self) -> None:
        alerts = read_json(self._path).get("alerts", [])
        if isinstance(alerts, list):
            self._alerts = [AlertRecord.model_validate(item) for item in alerts if isinstance(item, dict)]

    def _persist(self, alerts: List[AlertRecord]) -> None:
        if not self._path:
            return
        payload = {"alerts": [alert.model_dump(mode="json") for alert in alerts]}
        write_json_atomic(self._path, payload)

    def dispatch(self, session_id: str, kind: str, details: Dict[str, Any]) -> AlertRecord:
        """Purpose: Record and announce an alert for the sales team.
        Inputs/Outputs: Inputs are session id, alert kind and detail payload; returns the record.
        Side Effects / State: Logs at WARNING, appends to the list, writes to disk.
        Dependencies: _persist.
        Failure Modes: IO errors on persist propagate; the alert is then not cached.
        If Removed: Sales never hears about high-risk visitors.
        Testing Notes: Dispatch once and verify list_alerts() returns it.
        """
        # Log before persisting.
        record = AlertRecord(session_id=session_id, kind=kind, details=details)
        logger.warning("alert=%s session=%s details=%s", kind, session_id, details)
        with self._guard:
            staged = self._alerts + [record]
            self._persist(staged)
            self._alerts = staged
        return record

    def list_alerts(self, session_id: Optional[str] = None) -> List[AlertRecord]:
        with self._guard:
            return [a for a in self._alerts if session_id is None or a.session_id == session_id]

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .json_file import read_json, write_json_atomic
from .models import SessionState
from .retry import RetryPolicy


class StaleSessionError(RuntimeError):
    """Raised when a session update was computed from an out-of-date version."""


@dataclass
class _SessionLock:
    lock: threading.Lock
    holders: int = 0


class SessionStore:
    """Durable storage for per-visitor conversation state with per-session locking."""

    def __init__(self, path: Optional[Path] = None, retry_policy: Optional[RetryPolicy] = None) -> None:
        """Purpose: Initialize the session store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional file path and a retry policy for writes; no return.
        Side Effects / State: Loads and caches session states in memory.
        Dependencies: Calls _load; relies on the SessionState model.
        Failure Modes: Corrupt JSON leaves an empty cache.
        If Removed: Conversations restart from idle on every message.
        Testing Notes: Verify load on startup restores step, counters and history.
        """
        # Keep configuration and preload persisted sessions if present.
        self._path = path
        self._retry = retry_policy or RetryPolicy(retries=2, base_delay=0.2, retry_on=(OSError,))
        self._states: Dict[str, SessionState] = {}
        self._session_locks: Dict[str, _SessionLock] = {}
        self._guard = threading.Lock()
        self._load()

    def _load(self) -> None:
        data = read_json(self._path)
        sessions = data.get("sessions", {})
        if not isinstance(sessions, dict):
            return
        for session_id, raw in sessions.items():
            if isinstance(raw, dict):
                self._states[session_id] = SessionState.model_validate(raw)

    def _persist(self, states: Dict[str, SessionState]) -> None:
        """Purpose: Persist in-memory session states to disk.
        Inputs/Outputs: Input is the full state mapping to write; no return value.
        Side Effects / State: Atomically replaces the JSON file.
        Dependencies: write_json_atomic wrapped in the retry policy.
        Failure Modes: OSError is retried, then propagates to the caller.
        If Removed: Session state is lost across restarts.
        Testing Notes: Ensure file is created/updated and reloads into equal states.
        """
        # Serialize the given mapping; callers commit it to the cache only after this returns.
        if not self._path:
            return
        payload = {
            "sessions": {
                session_id: state.model_dump(mode="json") for session_id, state in states.items()
            }
        }
        self._retry.call(write_json_atomic, self._path, payload)

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold the lock that serializes turns for one session.

        The entry is dropped once no thread holds or waits on it.
        """
        with self._guard:
            entry = self._session_locks.get(session_id)
            if entry is None:
                entry = self._session_locks[session_id] = _SessionLock(threading.Lock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._session_locks[session_id]

    def get_state(self, session_id: str) -> SessionState:
        """Return a private copy of the session's state, or a fresh idle state when unknown."""
        with self._guard:
            state = self._states.get(session_id)
            if state is None:
                return SessionState(session_id=session_id)
            return state.model_copy(deep=True)

    def save_state(self, state: SessionState) -> SessionState:
        """Purpose: Store an updated state if it was derived from the current version.
        Inputs/Outputs: Input is the mutated state; returns the stored copy with version + 1.
        Side Effects / State: Writes to disk, then swaps the new state into the cache.
        Dependencies: _persist.
        Failure Modes: Raises StaleSessionError when state.version is not the stored version;
            a failed write leaves the cache untouched.
        If Removed: Turns are never saved and the state machine cannot advance.
        Testing Notes: Save twice from the same read; the second save must raise.
        """
        # Optimistic version check; a missing record counts as version 0.
        with self._guard:
            current = self._states.get(state.session_id)
            current_version = current.version if current else 0
            if state.version != current_version:
                raise StaleSessionError(
                    f"session {state.session_id} version {state.version} != stored {current_version}"
                )
            stored = state.model_copy(deep=True, update={"version": current_version + 1, "last_updated": time.time()})
            staged = dict(self._states)
            staged[state.session_id] = stored
            self._persist(staged)
            self._states = staged
            return stored.model_copy(deep=True)

    def list_sessions(self) -> List[SessionState]:
        """Return session states sorted by most recent activity."""
        with self._guard:
            states = [state.model_copy(deep=True) for state in self._states.values()]
        return sorted(states, key=lambda s: s.last_updated, reverse=True)

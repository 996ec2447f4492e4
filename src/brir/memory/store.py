"""In-memory session registry with idle expiry and a bounded footprint."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Iterator, List, Optional

from .schema import PipelineState, SessionKind, SessionRecord

DEFAULT_MAX_SESSIONS = 512
DEFAULT_IDLE_TTL_SECONDS = 24 * 60 * 60
LOGGER = logging.getLogger(__name__)


class SessionStore:
    """Maps host session identifiers to their registry records.

    Records are kept in least-recently-used order. A record idle for longer
    than ``idle_ttl_seconds`` is dropped the next time the store is touched,
    and the oldest records are dropped once ``max_sessions`` is exceeded.
    Nothing is persisted; the store lives as long as the process.
    """

    def __init__(
        self,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        idle_ttl_seconds: float | None = DEFAULT_IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._records: "OrderedDict[str, SessionRecord]" = OrderedDict()
        self.evicted: List[SessionRecord] = []

    # ---------------------------------------------------------------- lookups
    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(list(self._records.values()))

    def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return the record for ``session_id`` and mark it as recently used."""
        self._prune()
        record = self._records.get(session_id)
        if record is not None:
            self._touch(record)
        return record

    def pipeline(self, session_id: str) -> Optional[PipelineState]:
        """Return the pipeline state for an orchestrator session, if any."""
        record = self.get(session_id)
        if record is None:
            return None
        return record.pipeline

    def classify(self, session_id: str) -> SessionKind:
        """Primary when a user turn registered the session, otherwise subagent."""
        record = self.get(session_id)
        if record is None:
            return SessionKind.SUBAGENT
        return record.kind

    # -------------------------------------------------------------- mutation
    def register_turn(self, session_id: str, agent: str | None) -> SessionRecord:
        """Record a user-authored turn, promoting the session to primary."""
        self._prune()
        record = self._records.get(session_id)
        if record is None:
            record = SessionRecord(session_id=session_id, kind=SessionKind.PRIMARY, agent=agent)
            self._records[session_id] = record
        else:
            record.kind = SessionKind.PRIMARY
            record.agent = agent
        self._touch(record)
        self._enforce_capacity()
        return record

    def register_child(self, session_id: str, parent_id: str) -> SessionRecord:
        """Record a session spawned by ``parent_id`` as a subagent."""
        self._prune()
        record = self._records.get(session_id)
        if record is None:
            record = SessionRecord(
                session_id=session_id,
                kind=SessionKind.SUBAGENT,
                parent_id=parent_id,
            )
            self._records[session_id] = record
        elif record.kind is SessionKind.SUBAGENT:
            record.parent_id = parent_id
        self._touch(record)
        self._enforce_capacity()
        return record

    def evict(self, session_id: str) -> Optional[SessionRecord]:
        """Drop ``session_id`` from the registry and return its last record."""
        record = self._records.pop(session_id, None)
        if record is not None:
            self._note_eviction(record, reason="removed")
        return record

    def drain_evicted(self) -> List[SessionRecord]:
        """Return and clear the records evicted since the last call."""
        drained, self.evicted = self.evicted, []
        return drained

    # --------------------------------------------------------------- helpers
    def _touch(self, record: SessionRecord) -> None:
        record.last_seen = self._clock()
        self._records.move_to_end(record.session_id)

    def _prune(self) -> None:
        if self.idle_ttl_seconds is None:
            return
        cutoff = self._clock() - self.idle_ttl_seconds
        while self._records:
            oldest = next(iter(self._records.values()))
            if oldest.last_seen >= cutoff:
                break
            self._records.popitem(last=False)
            self._note_eviction(oldest, reason="idle")

    def _enforce_capacity(self) -> None:
        while len(self._records) > self.max_sessions:
            _, oldest = self._records.popitem(last=False)
            self._note_eviction(oldest, reason="capacity")

    def _note_eviction(self, record: SessionRecord, *, reason: str) -> None:
        self.evicted.append(record)
        if record.pipeline is not None:
            LOGGER.info(
                "Evicted pipeline session %s (%s) in phase %s",
                record.session_id,
                reason,
                record.pipeline.phase.value,
            )


__all__ = ["DEFAULT_IDLE_TTL_SECONDS", "DEFAULT_MAX_SESSIONS", "SessionStore"]

# app/services/chunk_sessions.py
"""
In-flight chunked upload sessions.

Each session has its own ``asyncio.Lock``; there is no table-wide lock.
Inserts into and removals from the table never await between the check and
the write, so they are atomic on the event loop. Assembly runs in a worker
thread after the lock is released; the session is in ``assembling`` state
meanwhile, which makes every concurrent chunk a no-op and makes the eviction
sweep skip it.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set

import structlog

from app.core.errors import ErrorCategory, Severity, UploadError, validation_error
from app.core.settings import Settings
from app.infra.memory import MemoryMonitor, MemoryPressure
from app.observability.metrics import active_sessions_gauge, chunk_counter, sessions_evicted_counter
from app.services.assembler import assemble_chunks, missing_indices
from app.services.chunk_validator import ChunkValidator

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadState(str, enum.Enum):
    created = "created"
    receiving = "receiving_chunks"
    all_received = "all_chunks_received"
    assembling = "assembling"
    processing = "processing"
    writing = "writing"
    verifying = "verifying"
    completed = "completed"
    recovering = "recovering"
    failed = "failed"
    expired = "expired"


TERMINAL_STATES = frozenset({UploadState.completed, UploadState.failed, UploadState.expired})

_FORWARD = {
    UploadState.created: {UploadState.receiving},
    UploadState.receiving: {UploadState.receiving, UploadState.all_received},
    UploadState.all_received: {UploadState.assembling},
    UploadState.assembling: {UploadState.processing},
    UploadState.processing: {UploadState.writing},
    UploadState.writing: {UploadState.verifying},
    UploadState.verifying: {UploadState.completed},
    UploadState.recovering: {
        UploadState.receiving,
        UploadState.all_received,
        UploadState.assembling,
        UploadState.processing,
        UploadState.writing,
        UploadState.verifying,
    },
}

# states waarin nog chunks worden aangenomen
_ACCEPTING = frozenset({UploadState.created, UploadState.receiving, UploadState.recovering})


class IllegalTransition(RuntimeError):
    pass


@dataclass
class ChunkFailure:
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None


@dataclass(frozen=True)
class SessionMeta:
    file_name: str
    file_type: str
    total_chunks: int
    original_chunk_size: Optional[int] = None


@dataclass
class UploadSession:
    session_id: str
    file_name: str
    file_type: str
    total_chunks: int
    original_chunk_size: int
    adaptive_chunk_size: int
    max_recovery_attempts: int
    received: Set[int] = field(default_factory=set)
    chunks: Dict[int, bytes] = field(default_factory=dict)
    # lengte per index, vastgelegd bij acceptatie
    chunk_sizes: Dict[int, int] = field(default_factory=dict)
    failures: Dict[int, ChunkFailure] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    is_recovering: bool = False
    recovery_attempts: int = 0
    state: UploadState = UploadState.created

    @property
    def received_bytes(self) -> int:
        # afgeleid van de geaccepteerde chunks, nooit een lopende teller
        return sum(self.chunk_sizes.values())

    @property
    def is_complete(self) -> bool:
        return len(self.received) == self.total_chunks and not missing_indices(self.chunks, self.total_chunks)

    @property
    def progress(self) -> float:
        return round(100.0 * len(self.received) / self.total_chunks, 1) if self.total_chunks else 0.0

    def transition(self, new_state: UploadState) -> None:
        current = self.state
        if current in TERMINAL_STATES:
            raise IllegalTransition(f"{self.session_id}: {current.value} is terminal")
        allowed = new_state in (UploadState.recovering, UploadState.failed, UploadState.expired) or (
            new_state in _FORWARD.get(current, ())
        )
        if not allowed:
            raise IllegalTransition(f"{self.session_id}: {current.value} -> {new_state.value}")
        self.state = new_state
        if new_state != current:
            logger.debug("session_transition", session_id=self.session_id, src=current.value, dst=new_state.value)

    def touch(self, now: datetime) -> None:
        self.last_activity = now

    def adapt_chunk_size(self, size: int) -> int:
        """Verlaag de adaptieve chunkgrootte; wordt nooit groter."""
        self.adaptive_chunk_size = min(self.adaptive_chunk_size, size)
        return self.adaptive_chunk_size

    def record_failure(self, index: int, error: str, now: datetime) -> None:
        failure = self.failures.setdefault(index, ChunkFailure())
        failure.attempts += 1
        failure.last_error = error
        failure.last_attempt = now

    def release_chunks(self) -> None:
        self.chunks.clear()


@dataclass
class ChunkReceipt:
    session_id: str
    accepted: bool
    duplicate: bool
    received_chunks: int
    total_chunks: int
    complete: bool
    adaptive_chunk_size: int
    memory_pressure: MemoryPressure
    suggested_action: Optional[str] = None
    error: Optional[UploadError] = None
    buffer: Optional[bytes] = field(default=None, repr=False)
    session: Optional[UploadSession] = field(default=None, repr=False)

    @property
    def progress(self) -> float:
        return round(100.0 * self.received_chunks / self.total_chunks, 1) if self.total_chunks else 0.0


@dataclass(frozen=True)
class RecoveryReport:
    session_id: str
    missing_chunks: List[int]
    received_chunks: int
    total_chunks: int
    recovery_attempts: int
    max_recovery_attempts: int
    adaptive_chunk_size: int
    state: UploadState


class _Entry:
    __slots__ = ("session", "lock")

    def __init__(self, session: UploadSession):
        self.session = session
        self.lock = asyncio.Lock()


class ChunkSessionManager:
    def __init__(
        self,
        validator: ChunkValidator,
        monitor: MemoryMonitor,
        *,
        idle_timeout_sec: float,
        eviction_interval_sec: float,
        max_recovery_attempts: int,
        assemble: Callable[[Mapping[int, bytes], int, Optional[int]], bytes] = assemble_chunks,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._validator = validator
        self._monitor = monitor
        self._idle_timeout = idle_timeout_sec
        self._interval = eviction_interval_sec
        self._max_recovery = max_recovery_attempts
        self._assemble = assemble
        self._clock = clock
        self._sessions: Dict[str, _Entry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, monitor: MemoryMonitor) -> "ChunkSessionManager":
        return cls(
            ChunkValidator.from_settings(settings),
            monitor,
            idle_timeout_sec=settings.session_idle_timeout_sec,
            eviction_interval_sec=settings.eviction_interval_sec,
            max_recovery_attempts=settings.max_recovery_attempts,
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._eviction_loop(), name="chunk-session-eviction")
            logger.info("session_sweeper_started", interval_sec=self._interval, idle_timeout_sec=self._idle_timeout)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        # sessies zijn process-lokaal; bij shutdown gaan ze verloren
        dropped = len(self._sessions)
        for entry in self._sessions.values():
            entry.session.release_chunks()
        self._sessions.clear()
        active_sessions_gauge.set(0)
        logger.info("session_sweeper_stopped", dropped_sessions=dropped)

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.evict_expired()
            except Exception:
                logger.exception("session_sweep_failed")

    # ------------------------------------------------------------------
    # table
    # ------------------------------------------------------------------
    def get(self, session_id: str) -> Optional[UploadSession]:
        entry = self._sessions.get(session_id)
        return entry.session if entry else None

    def active_count(self) -> int:
        return len(self._sessions)

    def is_complete(self, session_id: str) -> bool:
        entry = self._sessions.get(session_id)
        return bool(entry and entry.session.is_complete)

    def get_or_create_session(self, session_id: str, meta: SessionMeta) -> UploadSession:
        return self._get_or_create_entry(session_id, meta).session

    def _get_or_create_entry(self, session_id: str, meta: SessionMeta) -> _Entry:
        entry = self._sessions.get(session_id)
        if entry is None:
            original = meta.original_chunk_size or self._validator.max_bytes
            now = self._clock()
            session = UploadSession(
                session_id=session_id,
                file_name=meta.file_name,
                file_type=meta.file_type,
                total_chunks=meta.total_chunks,
                original_chunk_size=original,
                adaptive_chunk_size=original,
                max_recovery_attempts=self._max_recovery,
                created_at=now,
                last_activity=now,
            )
            entry = _Entry(session)
            self._sessions[session_id] = entry
            active_sessions_gauge.set(len(self._sessions))
            logger.info(
                "session_created",
                session_id=session_id,
                file_name=meta.file_name,
                total_chunks=meta.total_chunks,
            )
        return entry

    def _drop(self, session_id: str, entry: _Entry) -> None:
        if self._sessions.get(session_id) is entry:
            del self._sessions[session_id]
            active_sessions_gauge.set(len(self._sessions))

    # ------------------------------------------------------------------
    # chunks
    # ------------------------------------------------------------------
    async def receive_chunk(self, session_id: str, chunk_index: int, data: bytes, meta: SessionMeta) -> ChunkReceipt:
        self._validator.check_bounds(chunk_index, meta.total_chunks, len(data))
        stats = self._monitor.get_stats()

        entry = self._get_or_create_entry(session_id, meta)
        session = entry.session
        async with entry.lock:
            if self._sessions.get(session_id) is not entry:
                raise validation_error(
                    "Upload session is no longer active",
                    code="session_gone",
                    suggestions=["Restart the upload"],
                )
            now = self._clock()
            session.touch(now)

            if meta.total_chunks != session.total_chunks:
                if session.chunks:
                    raise validation_error(
                        f"total_chunks changed from {session.total_chunks} to {meta.total_chunks}",
                        code="total_chunks_mismatch",
                        suggestions=["Start a new session to change the chunk layout"],
                    )
                session.total_chunks = meta.total_chunks

            duplicate = chunk_index in session.received or session.state not in _ACCEPTING
            if not duplicate:
                optimal = self._validator.optimal_chunk_size(stats)
                if optimal is not None:
                    limit = session.adapt_chunk_size(optimal)
                    rejection = self._validator.backpressure(len(data), limit, stats)
                    if rejection is not None:
                        session.record_failure(chunk_index, rejection.message, now)
                        chunk_counter.labels(result="rejected").inc()
                        logger.warning(
                            "chunk_rejected",
                            session_id=session_id,
                            chunk_index=chunk_index,
                            size=len(data),
                            adaptive_chunk_size=limit,
                            memory_pressure=stats.pressure.value,
                        )
                        return self._receipt(
                            session, stats.pressure, accepted=False,
                            suggested_action=rejection.suggested_action, error=rejection,
                        )

                if session.state != UploadState.receiving:
                    session.is_recovering = False
                    session.transition(UploadState.receiving)
                session.chunks[chunk_index] = data
                session.chunk_sizes[chunk_index] = len(data)
                session.received.add(chunk_index)
                session.failures.pop(chunk_index, None)
                chunk_counter.labels(result="accepted").inc()
                logger.info(
                    "chunk_received",
                    session_id=session_id,
                    chunk_index=chunk_index,
                    received=len(session.received),
                    total_chunks=session.total_chunks,
                )
            else:
                chunk_counter.labels(result="duplicate").inc()
                logger.info("chunk_duplicate", session_id=session_id, chunk_index=chunk_index, state=session.state.value)

            ready = session.is_complete and session.state in (UploadState.receiving, UploadState.recovering)
            if not ready:
                return self._receipt(session, stats.pressure, accepted=not duplicate, duplicate=duplicate)

            if session.state == UploadState.recovering:
                session.is_recovering = False
                session.transition(UploadState.receiving)
            session.transition(UploadState.all_received)
            session.transition(UploadState.assembling)

        # buiten de lock: niemand muteert een sessie in 'assembling'
        try:
            buffer = await asyncio.to_thread(
                self._assemble, session.chunks, session.total_chunks, session.received_bytes
            )
        except UploadError as exc:
            await self._enter_recovery(session_id, entry, exc)
            raise

        async with entry.lock:
            self._drop(session_id, entry)
            session.release_chunks()
        logger.info("session_assembled", session_id=session_id, size=len(buffer), total_chunks=session.total_chunks)
        return self._receipt(
            session, stats.pressure, accepted=not duplicate, duplicate=duplicate,
            complete=True, buffer=buffer,
        )

    async def _enter_recovery(self, session_id: str, entry: _Entry, exc: UploadError) -> None:
        """Zet de sessie in 'recovering' of vernietig hem als de pogingen op zijn."""
        session = entry.session
        async with entry.lock:
            session.recovery_attempts += 1
            if session.recovery_attempts > session.max_recovery_attempts:
                session.transition(UploadState.failed)
                self._drop(session_id, entry)
                session.release_chunks()
                logger.error(
                    "session_recovery_exhausted",
                    session_id=session_id,
                    attempts=session.recovery_attempts,
                    error=exc.message,
                )
                raise UploadError(
                    f"Upload could not be assembled after {session.max_recovery_attempts} recovery attempts",
                    ErrorCategory.processing,
                    retryable=False,
                    severity=Severity.high,
                    code="recovery_exhausted",
                    suggestions=["Restart the upload from the beginning"],
                ) from exc

            session.transition(UploadState.recovering)
            session.is_recovering = True
            if exc.code != "missing_chunks":
                # inhoud onbetrouwbaar: alles opnieuw laten sturen
                session.chunks.clear()
                session.chunk_sizes.clear()
                session.received.clear()
            logger.warning(
                "session_recovering",
                session_id=session_id,
                attempt=session.recovery_attempts,
                error_code=exc.code,
            )

    async def recover(self, session_id: str) -> RecoveryReport:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise validation_error(
                f"Unknown or expired upload session: {session_id}",
                code="session_not_found",
                suggestions=["Restart the upload"],
            )
        session = entry.session
        async with entry.lock:
            missing = missing_indices(session.chunks, session.total_chunks)
            session.is_recovering = False
            if session.state == UploadState.recovering:
                session.transition(UploadState.receiving)
            session.touch(self._clock())
            return RecoveryReport(
                session_id=session_id,
                missing_chunks=missing,
                received_chunks=len(session.received),
                total_chunks=session.total_chunks,
                recovery_attempts=session.recovery_attempts,
                max_recovery_attempts=session.max_recovery_attempts,
                adaptive_chunk_size=session.adaptive_chunk_size,
                state=session.state,
            )

    async def evict_expired(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        evicted: List[str] = []
        for session_id, entry in list(self._sessions.items()):
            async with entry.lock:
                session = entry.session
                if self._sessions.get(session_id) is not entry or session.state == UploadState.assembling:
                    continue
                idle = (now - session.last_activity).total_seconds()
                if idle <= self._idle_timeout:
                    continue
                session.transition(UploadState.expired)
                self._drop(session_id, entry)
                session.release_chunks()
                evicted.append(session_id)
                logger.info("session_expired", session_id=session_id, idle_sec=round(idle, 1))
        if evicted:
            sessions_evicted_counter.inc(len(evicted))
        return evicted

    @staticmethod
    def _receipt(
        session: UploadSession,
        pressure: MemoryPressure,
        *,
        accepted: bool,
        duplicate: bool = False,
        complete: bool = False,
        suggested_action: Optional[str] = None,
        error: Optional[UploadError] = None,
        buffer: Optional[bytes] = None,
    ) -> ChunkReceipt:
        return ChunkReceipt(
            session_id=session.session_id,
            accepted=accepted,
            duplicate=duplicate,
            received_chunks=len(session.received),
            total_chunks=session.total_chunks,
            complete=complete,
            adaptive_chunk_size=session.adaptive_chunk_size,
            memory_pressure=pressure,
            suggested_action=suggested_action,
            error=error,
            buffer=buffer,
            session=session,
        )

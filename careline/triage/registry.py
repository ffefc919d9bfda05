"""
Session Registry — process-wide map of active conversation sessions.

One active session per patient.  Turns within a session are serialised
through an asyncio.Condition and run in arrival order; sessions for
different patients run concurrently.

Utterances that carry a sequence number are re-sequenced: an early one
waits up to the reorder window for the gap to fill, a stale or duplicate
one is rejected with OutOfOrderUtterance.

Idle sessions are abandoned after the inactivity timeout by a background
cleanup loop.  Abandonment cancels in-flight classification work but
never an escalation, which the Escalation Coordinator owns; abandon hooks
let the owner of the case close it once it has reached the patient.

Closed sessions (resolved, escalated, abandoned) keep a bounded final
snapshot for status polling.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from careline import settings
from careline.triage.audit import safe_record
from careline.triage.clock import Clock
from careline.triage.collaborators import AuditSink
from careline.triage.errors import OutOfOrderUtterance, SessionAbandoned, SessionNotFound
from careline.triage.events import AuditEvent, AuditEventKind, UtteranceEnvelope
from careline.triage.models import ConversationSession, SessionState, TurnOutcome
from careline.triage.session import ConversationStateMachine

logger = logging.getLogger("triage.registry")


class SessionClosed(Exception):
    """The session closed while an utterance was waiting for its turn."""


@dataclass
class SessionHandle:
    session: ConversationSession
    condition: asyncio.Condition
    busy: bool = False
    next_sequence: Optional[int] = None
    current_task: Optional[asyncio.Task] = None
    closed: bool = False
    abandoned: bool = False


class SessionRegistry:
    """
    Usage:
        registry = SessionRegistry(machine, audit=sink)
        await registry.start()
        outcome = await registry.run_turn(envelope)
    """

    def __init__(
        self,
        machine: ConversationStateMachine,
        *,
        audit: AuditSink,
        clock: Clock | None = None,
        inactivity_seconds: float = settings.SESSION_INACTIVITY_SECONDS,
        cleanup_interval_seconds: float = settings.SESSION_CLEANUP_INTERVAL_SECONDS,
        reorder_window_seconds: float = settings.REORDER_WINDOW_SECONDS,
        closed_cache_size: int = settings.CLOSED_SESSION_CACHE_SIZE,
    ) -> None:
        self._machine = machine
        self._audit = audit
        self._clock = clock or Clock()
        self._inactivity = inactivity_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._reorder_window = reorder_window_seconds
        self._closed_cache_size = closed_cache_size

        self._sessions: dict[str, SessionHandle] = {}
        self._by_patient: dict[str, str] = {}
        self._closed: OrderedDict[str, ConversationSession] = OrderedDict()
        self._cleanup_task: asyncio.Task | None = None
        self._running = False
        self.abandoned_count = 0
        self._abandon_hooks: list[Callable[[ConversationSession], Awaitable[None]]] = []

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the cleanup background loop."""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "SessionRegistry started (inactivity=%ds, cleanup every %ds)",
            self._inactivity, self._cleanup_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        for handle in list(self._sessions.values()):
            if handle.current_task and not handle.current_task.done():
                handle.current_task.cancel()
        logger.info("SessionRegistry stopped")

    def on_abandon(self, hook: Callable[[ConversationSession], Awaitable[None]]) -> None:
        """Register a coroutine called with the final snapshot of each abandoned session."""
        self._abandon_hooks.append(hook)

    # ── Sessions ──

    def get_session(self, session_id: str) -> tuple[ConversationSession, bool]:
        """(deep copy, closed) for an active or recently closed session."""
        handle = self._sessions.get(session_id)
        if handle is not None:
            return handle.session.model_copy(deep=True), False
        closed = self._closed.get(session_id)
        if closed is not None:
            return closed.model_copy(deep=True), True
        raise SessionNotFound(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def active_sessions(self) -> list[str]:
        return list(self._sessions.keys())

    def get_metrics(self) -> dict[str, Any]:
        states: dict[str, int] = {}
        for handle in self._sessions.values():
            states[handle.session.state.value] = states.get(handle.session.state.value, 0) + 1
        return {
            "active_sessions": len(self._sessions),
            "closed_cached": len(self._closed),
            "abandoned": self.abandoned_count,
            "sessions_per_state": states,
        }

    # ── Turns ──

    async def run_turn(self, envelope: UtteranceEnvelope) -> TurnOutcome:
        """Run one utterance through its session, in order."""
        for _ in range(2):
            handle = self._resolve(envelope)
            try:
                return await self._run_on(handle, envelope)
            except SessionClosed:
                if not envelope.allow_create:
                    raise SessionNotFound(handle.session.session_id) from None
                logger.info(
                    "Session %s closed while utterance waited — opening a new one",
                    handle.session.session_id,
                )
                envelope = envelope.model_copy(update={"session_id": None, "sequence": None})
        raise SessionNotFound(envelope.session_id or "")

    async def _run_on(self, handle: SessionHandle, envelope: UtteranceEnvelope) -> TurnOutcome:
        sid = handle.session.session_id
        seq = envelope.sequence

        async with handle.condition:
            if seq is not None:
                await self._await_sequence(handle, seq)
            await handle.condition.wait_for(lambda: not handle.busy or handle.closed)
            if handle.closed:
                if handle.abandoned:
                    raise SessionAbandoned(sid)
                raise SessionClosed(sid)
            if seq is not None and seq < handle.next_sequence:
                # A duplicate claimed this number while we waited
                raise OutOfOrderUtterance(sid, handle.next_sequence, seq)
            handle.busy = True
            if seq is not None:
                handle.next_sequence = seq + 1
                handle.condition.notify_all()

        try:
            task = asyncio.create_task(self._machine.handle(handle.session, envelope))
            handle.current_task = task
            try:
                outcome = await task
            except asyncio.CancelledError:
                if handle.abandoned:
                    raise SessionAbandoned(sid) from None
                raise
        finally:
            async with handle.condition:
                handle.busy = False
                handle.current_task = None
                handle.condition.notify_all()

        if handle.session.is_terminal:
            await self._close(handle)
        return outcome

    async def _await_sequence(self, handle: SessionHandle, seq: int) -> None:
        """Called with the condition held."""
        sid = handle.session.session_id
        if handle.next_sequence is None:
            handle.next_sequence = seq
        if seq < handle.next_sequence:
            raise OutOfOrderUtterance(sid, handle.next_sequence, seq)
        if seq > handle.next_sequence:
            logger.info(
                "Utterance %d for session %s arrived early (expected %d) — holding",
                seq, sid, handle.next_sequence,
            )
            try:
                await asyncio.wait_for(
                    handle.condition.wait_for(
                        lambda: handle.closed or handle.next_sequence >= seq
                    ),
                    timeout=self._reorder_window,
                )
            except asyncio.TimeoutError:
                raise OutOfOrderUtterance(sid, handle.next_sequence, seq) from None
            if handle.closed:
                return
            if seq < handle.next_sequence:
                raise OutOfOrderUtterance(sid, handle.next_sequence, seq)

    def _resolve(self, envelope: UtteranceEnvelope) -> SessionHandle:
        pid = envelope.patient_id
        sid = envelope.session_id
        active_sid = self._by_patient.get(pid)

        if sid:
            handle = self._sessions.get(sid)
            if handle is not None:
                if handle.session.patient_id != pid:
                    raise SessionNotFound(sid)
                return handle
            if not envelope.allow_create or active_sid is not None:
                raise SessionNotFound(sid)
            if sid in self._closed:
                # Finished conversations are never reopened
                return self._create(pid)
            return self._create(pid, sid)

        if active_sid is not None:
            return self._sessions[active_sid]
        if not envelope.allow_create:
            raise SessionNotFound(f"patient:{pid}")
        return self._create(pid)

    def _create(self, patient_id: str, session_id: str | None = None) -> SessionHandle:
        now = self._clock.now()
        fields: dict[str, Any] = {"patient_id": patient_id, "created_at": now, "last_activity": now}
        if session_id:
            fields["session_id"] = session_id
        session = ConversationSession(**fields)
        handle = SessionHandle(session=session, condition=asyncio.Condition())
        self._sessions[session.session_id] = handle
        self._by_patient[patient_id] = session.session_id
        logger.info("Opened session %s for patient %s", session.session_id, patient_id)
        return handle

    # ── Closing ──

    async def close(self, session_id: str, state: SessionState) -> ConversationSession:
        """Move an active session to a terminal state, after any running turn."""
        handle = self._sessions.get(session_id)
        if handle is None:
            raise SessionNotFound(session_id)
        async with handle.condition:
            await handle.condition.wait_for(lambda: not handle.busy or handle.closed)
        if handle.closed:
            raise SessionNotFound(session_id)
        handle.session.state = state
        handle.session.last_activity = self._clock.now()
        if state == SessionState.ESCALATED:
            handle.session.escalated = True
        await self._close(handle)
        return handle.session.model_copy(deep=True)

    async def _close(self, handle: SessionHandle) -> None:
        session = handle.session
        sid = session.session_id
        if handle.closed:
            return
        self._sessions.pop(sid, None)
        if self._by_patient.get(session.patient_id) == sid:
            self._by_patient.pop(session.patient_id, None)
        self._closed[sid] = session.model_copy(deep=True)
        while len(self._closed) > self._closed_cache_size:
            self._closed.popitem(last=False)
        async with handle.condition:
            handle.closed = True
            handle.condition.notify_all()
        logger.info("Closed session %s (%s)", sid, session.state.value)

    def mark_data_refreshed(self, session_id: str) -> None:
        handle = self._sessions.get(session_id)
        if handle is not None:
            handle.session.needs_data_retry = False
        closed = self._closed.get(session_id)
        if closed is not None:
            closed.needs_data_retry = False

    async def sweep_idle(self) -> list[str]:
        """Abandon sessions idle past the inactivity timeout."""
        now = self._clock.now()
        idle = [
            handle for handle in list(self._sessions.values())
            if (now - handle.session.last_activity).total_seconds() > self._inactivity
        ]
        for handle in idle:
            await self._abandon(handle)
        return [h.session.session_id for h in idle]

    async def _abandon(self, handle: SessionHandle) -> None:
        session = handle.session
        handle.abandoned = True
        previous = session.state
        session.state = SessionState.ABANDONED
        task = handle.current_task
        if task is not None and not task.done():
            task.cancel()
        self.abandoned_count += 1
        logger.info(
            "Abandoning idle session %s for patient %s (was %s)",
            session.session_id, session.patient_id, previous.value,
        )
        await safe_record(self._audit, AuditEvent(
            kind=AuditEventKind.SESSION_ABANDONED,
            session_id=session.session_id,
            patient_id=session.patient_id,
            detail={
                "previous_state": previous.value,
                "escalation_case_id": session.escalation_case_id,
                "turns": len(session.turns),
            },
            timestamp=self._clock.now(),
        ))
        await self._close(handle)
        snapshot = session.model_copy(deep=True)
        for hook in self._abandon_hooks:
            try:
                await hook(snapshot)
            except Exception as exc:
                logger.error("Abandon hook failed for session %s: %s", session.session_id, exc, exc_info=True)

    async def _cleanup_loop(self) -> None:
        """Periodically abandon idle sessions."""
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                abandoned = await self.sweep_idle()
                if abandoned:
                    logger.info("Cleanup abandoned %d idle session(s)", len(abandoned))
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Session cleanup error: %s", exc)

"""
Escalation Coordinator — drives a Tier 3 case to a human under a hard deadline.

Workflow (one per session, idempotent by session id):
  1. Check provider availability (short timeout; timeout = unavailable)
  2. If available → offer a chat/voice hand-off; on acceptance start it
  3. Otherwise, or on decline / no reply / hand-off failure → offer urgent
     appointment slots; booking happens when the patient picks one
  4. Whatever the path → exactly one provider alert (background task,
     retried with backoff until the case deadline) and one audit entry
     per step

The deadline is a single budget from Tier 3 determination.  If the
workflow has not told the patient what happens next when it expires, the
patient gets emergency-contact guidance and the overrun is logged as a
reliability incident.

The coordinator exclusively owns EscalationCase objects: every public
method returns a deep copy.  Workflow tasks belong to the coordinator, so
session abandonment never cancels an escalation; the case of an abandoned
session is closed once the patient has been notified.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Optional

from careline import settings
from careline.triage.audit import safe_record
from careline.triage.clock import Clock
from careline.triage.collaborators import (
    AppointmentProvider,
    AppointmentRequest,
    AppointmentSlot,
    AuditSink,
    CommunicationProvider,
    NotifierRegistry,
    PatientMessage,
    ProviderAlert,
    ProviderAvailabilityProvider,
)
from careline.triage.errors import (
    DeadlineExceeded,
    HandoffFailure,
    ProviderUnavailable,
    SessionNotFound,
)
from careline.triage.events import AuditEvent, AuditEventKind
from careline.triage.models import (
    ConversationSession,
    EscalationCase,
    EscalationPath,
    EscalationStatus,
    InteractionMode,
    RedFlagFinding,
)
from careline.triage.responses import ResponseComposer

logger = logging.getLogger("triage.escalation")

# Provider alert retry backoff ceiling (seconds)
ALERT_RETRY_MAX_DELAY = 5.0
# Emergency guidance goes out after the deadline; the send itself is bounded too
FALLBACK_NOTIFY_TIMEOUT = 2.0


class EscalationCoordinator:
    """
    Usage:
        coordinator = EscalationCoordinator(availability=..., communication=...,
                                            appointments=..., notifiers=..., audit=...)
        case = await coordinator.escalate(session, findings=..., reason="red_flag",
                                          provider_id="dr-lee")
        await coordinator.respond_to_handoff(session.session_id, accept=True)
    """

    def __init__(
        self,
        *,
        availability: ProviderAvailabilityProvider,
        communication: CommunicationProvider,
        appointments: AppointmentProvider,
        notifiers: NotifierRegistry,
        audit: AuditSink,
        composer: ResponseComposer | None = None,
        clock: Clock | None = None,
        deadline_seconds: float = settings.ESCALATION_DEADLINE_SECONDS,
        availability_timeout: float = settings.AVAILABILITY_TIMEOUT_SECONDS,
        handoff_reply_seconds: float = settings.HANDOFF_REPLY_SECONDS,
        appointment_reserve_seconds: float = settings.APPOINTMENT_RESERVE_SECONDS,
        alert_retry_delay: float = 0.5,
        alert_timeout: float = settings.PROVIDER_ALERT_TIMEOUT_SECONDS,
        fallback_notify_timeout: float = FALLBACK_NOTIFY_TIMEOUT,
        closed_cache_size: int = settings.CLOSED_SESSION_CACHE_SIZE,
    ) -> None:
        self._availability = availability
        self._communication = communication
        self._appointments = appointments
        self._notifiers = notifiers
        self._audit = audit
        self._composer = composer or ResponseComposer()
        self._clock = clock or Clock()
        self._deadline_seconds = deadline_seconds
        self._availability_timeout = availability_timeout
        self._handoff_reply_seconds = handoff_reply_seconds
        self._appointment_reserve = appointment_reserve_seconds
        self._alert_retry_delay = alert_retry_delay
        self._alert_timeout = alert_timeout
        self._fallback_notify_timeout = fallback_notify_timeout
        self._closed_cache_size = closed_cache_size

        # session_id → case (open cases only)
        self._cases: dict[str, EscalationCase] = {}
        # Acknowledged cases kept for status polling
        self._closed: OrderedDict[str, EscalationCase] = OrderedDict()
        self._contexts: dict[str, dict[str, Any]] = {}
        self._slots: dict[str, list[AppointmentSlot]] = {}
        self._handoff_replies: dict[str, asyncio.Future[bool]] = {}
        self._outcomes: dict[str, asyncio.Event] = {}
        self._booking: set[str] = set()
        self._alert_state: dict[str, str] = {}  # session_id → pending | sent | failed
        # session_id → loop time after which alert retries stop
        self._alert_deadlines: dict[str, float] = {}
        # Sessions that ended before their case reached the patient
        self._orphaned: set[str] = set()
        self._workflows: dict[str, asyncio.Task] = {}
        self._bg_tasks: set[asyncio.Task] = set()
        self._metrics: dict[str, int] = {
            "escalations_started": 0,
            "handoffs_started": 0,
            "handoff_failures": 0,
            "appointments_offered": 0,
            "appointments_booked": 0,
            "emergency_fallbacks": 0,
            "deadline_exceeded": 0,
            "provider_alerts_sent": 0,
            "provider_alert_failures": 0,
        }

    # ── Public API ──

    async def escalate(
        self,
        session: ConversationSession,
        *,
        findings: list[RedFlagFinding],
        reason: str,
        provider_id: str,
        channel: str = "app",
    ) -> EscalationCase:
        """Start the workflow for a session.  Repeated calls return the same case."""
        sid = session.session_id
        existing = self._cases.get(sid) or self._closed.get(sid)
        if existing is not None:
            logger.info("Escalation for session %s already exists (case %s)", sid, existing.case_id)
            return existing.model_copy(deep=True)

        now = self._clock.now()
        case = EscalationCase(
            session_id=sid,
            patient_id=session.patient_id,
            provider_id=provider_id,
            created_at=now,
            deadline=now + timedelta(seconds=self._deadline_seconds),
            findings=list(findings),
            reason=reason,
        )
        # Registered before the first await so concurrent callers see it
        self._cases[sid] = case
        self._outcomes[sid] = asyncio.Event()
        self._contexts[sid] = {
            "session_id": sid,
            "mode": session.mode,
            "language": session.language,
            "channel": channel,
            "reason": reason,
            "symptoms": [
                {"name": s.name, "severity": s.severity, "onset": s.onset}
                for s in session.symptoms.values()
            ],
            "findings": [f.model_dump(mode="json") for f in findings],
            "recent_messages": session.patient_texts()[-5:],
        }
        self._metrics["escalations_started"] += 1

        logger.warning(
            "ESCALATION started for patient %s (session %s, case %s): %s",
            session.patient_id, sid, case.case_id, reason,
        )
        await self._record(case, AuditEventKind.ESCALATION_STARTED, {
            "case_id": case.case_id,
            "reason": reason,
            "provider_id": provider_id,
            "findings": [f.type for f in findings],
            "deadline": case.deadline.isoformat(),
        })

        self._alert_state[sid] = "pending"
        self._alert_deadlines[sid] = asyncio.get_running_loop().time() + self._deadline_seconds
        self._spawn(self._send_provider_alert(sid))
        self._workflows[sid] = asyncio.create_task(self._supervise(sid))
        return case.model_copy(deep=True)

    async def respond_to_handoff(self, session_id: str, accept: bool) -> EscalationCase:
        case = self._require(session_id)
        reply = self._handoff_replies.get(session_id)
        if reply is not None and not reply.done():
            reply.set_result(accept)
            logger.info("Patient %s hand-off for session %s", "accepted" if accept else "declined", session_id)
        else:
            logger.info("No open hand-off offer for session %s — reply ignored", session_id)
        # Let the workflow react before reporting back
        await asyncio.sleep(0)
        return case.model_copy(deep=True)

    async def book_appointment(self, session_id: str, slot_id: str) -> EscalationCase:
        """Book one of the offered slots.  Raises ValueError if it can't."""
        case = self._require(session_id)
        if case.status != EscalationStatus.APPOINTMENT_OFFERED:
            raise ValueError("There is no open appointment offer for this conversation")
        slot = next((s for s in self._slots.get(session_id, []) if s.slot_id == slot_id), None)
        if slot is None:
            raise ValueError(f"Slot {slot_id} was not offered")
        if session_id in self._booking:
            raise ValueError("A booking is already in progress")

        self._booking.add(session_id)
        try:
            appointment = await self._appointments.book(AppointmentRequest(
                patient_id=case.patient_id,
                provider_id=slot.provider_id,
                slot_id=slot.slot_id,
                mode=slot.mode,
                urgent=True,
                reason=case.reason,
            ))
        except Exception as exc:
            logger.warning("Booking slot %s for session %s failed: %s", slot_id, session_id, exc)
            raise ValueError("That slot could not be booked. Please choose another one.") from exc
        finally:
            self._booking.discard(session_id)

        case.appointment = appointment.model_dump(mode="json")
        case.status = EscalationStatus.APPOINTMENT_BOOKED
        case.path = EscalationPath.SCHEDULED_APPOINTMENT
        case.completed_at = self._clock.now()
        self._metrics["appointments_booked"] += 1
        await self._record(case, AuditEventKind.APPOINTMENT_BOOKED, {
            "case_id": case.case_id,
            "appointment_id": appointment.appointment_id,
            "slot_id": slot.slot_id,
            "start": slot.start.isoformat(),
            "mode": slot.mode,
        })
        await self._notify(case, self._composer.appointment_booked(appointment))
        return case.model_copy(deep=True)

    async def acknowledge(self, session_id: str) -> EscalationCase:
        """Close a case once the patient has been told what happens next."""
        closed = self._closed.get(session_id)
        if closed is not None and session_id not in self._cases:
            return closed.model_copy(deep=True)
        case = self._require(session_id)
        if not case.patient_notified:
            raise ValueError("The escalation has not reached the patient yet")
        await self._record(case, AuditEventKind.ESCALATION_ACKNOWLEDGED, {
            "case_id": case.case_id,
            "status": case.status.value,
        })
        self._close(session_id)
        return case.model_copy(deep=True)

    async def release_session(self, session_id: str) -> None:
        """The conversation ended without an acknowledgement.

        A case that already reached the patient is closed now; one still in
        flight is closed when its workflow finishes.
        """
        case = self._cases.get(session_id)
        if case is None:
            return
        if case.patient_notified:
            await self._close_released(case)
        else:
            self._orphaned.add(session_id)
            logger.info("Session %s ended mid-escalation; case %s closes when notified", session_id, case.case_id)

    def get_case(self, session_id: str) -> Optional[EscalationCase]:
        case = self._cases.get(session_id) or self._closed.get(session_id)
        return case.model_copy(deep=True) if case else None

    @property
    def open_cases(self) -> list[EscalationCase]:
        return [c.model_copy(deep=True) for c in self._cases.values()]

    async def wait_for_outcome(self, session_id: str, timeout: float | None = None) -> EscalationCase:
        """Block until the patient has been notified (or the case is closed)."""
        event = self._outcomes.get(session_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        case = self.get_case(session_id)
        if case is None:
            raise SessionNotFound(session_id)
        return case

    def get_metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = dict(self._metrics)
        metrics["open_cases"] = len(self._cases)
        metrics["running_workflows"] = sum(1 for t in self._workflows.values() if not t.done())
        return metrics

    async def stop(self) -> None:
        """Cancel running workflows and background alerts (process shutdown only)."""
        tasks = [t for t in self._workflows.values() if not t.done()] + list(self._bg_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("Escalation task ended with error during stop: %s", exc)
        self._workflows.clear()
        logger.info("EscalationCoordinator stopped")

    # ── Workflow ──

    async def _supervise(self, sid: str) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            await asyncio.wait_for(self._workflow(sid, started), timeout=self._deadline_seconds)
        except asyncio.TimeoutError:
            case = self._cases.get(sid)
            if case is not None and not case.patient_notified:
                self._metrics["deadline_exceeded"] += 1
                err = DeadlineExceeded(
                    f"case {case.case_id} reached no patient notification within "
                    f"{self._deadline_seconds:.0f}s (status {case.status.value})"
                )
                logger.error("RELIABILITY INCIDENT: %s", err)
                await self._emergency_fallback(sid, "deadline_exceeded")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Escalation workflow for session %s failed: %s", sid, exc, exc_info=True)
            await self._emergency_fallback(sid, "workflow_error")
        finally:
            event = self._outcomes.get(sid)
            if event is not None:
                event.set()
            if sid in self._orphaned:
                case = self._cases.get(sid)
                if case is not None:
                    await self._close_released(case)

    async def _workflow(self, sid: str, started: float) -> None:
        case = self._cases[sid]
        loop = asyncio.get_running_loop()

        def remaining() -> float:
            return self._deadline_seconds - (loop.time() - started)

        if await self._check_availability(case, remaining()):
            if await self._offer_handoff(case, remaining() - self._appointment_reserve):
                try:
                    await self._start_handoff(case)
                    return
                except HandoffFailure as exc:
                    self._metrics["handoff_failures"] += 1
                    logger.warning("Hand-off for session %s failed: %s — offering appointment", sid, exc)
                    await self._record(case, AuditEventKind.HANDOFF_FAILED, {
                        "case_id": case.case_id, "error": str(exc),
                    })

        slots = await self._fetch_slots(case, remaining())
        if not slots:
            await self._emergency_fallback(sid, "no_appointment_slots")
            return

        self._slots[sid] = slots
        case.offered_slots = [s.model_dump(mode="json") for s in slots]
        case.status = EscalationStatus.APPOINTMENT_OFFERED
        case.path = EscalationPath.SCHEDULED_APPOINTMENT
        self._metrics["appointments_offered"] += 1
        await self._record(case, AuditEventKind.APPOINTMENT_OFFERED, {
            "case_id": case.case_id,
            "slot_ids": [s.slot_id for s in slots],
        })
        await self._notify(case, self._composer.appointment_offer(slots), slots=case.offered_slots)

    async def _check_availability(self, case: EscalationCase, budget: float) -> bool:
        case.status = EscalationStatus.CHECKING_AVAILABILITY
        timeout = max(0.0, min(self._availability_timeout, budget))
        try:
            status = await asyncio.wait_for(
                self._availability.check_availability(case.provider_id or ""),
                timeout=timeout,
            )
            available = bool(status.available)
            case.availability = status.model_dump(mode="json")
        except asyncio.TimeoutError:
            err = ProviderUnavailable(f"availability check exceeded {timeout:.1f}s")
            logger.warning("Provider %s: %s — treating as unavailable", case.provider_id, err)
            available = False
            case.availability = {"available": False, "status": "timeout"}
        except Exception as exc:
            err = ProviderUnavailable(str(exc))
            logger.warning("Provider %s availability failed: %s — treating as unavailable", case.provider_id, err)
            available = False
            case.availability = {"available": False, "status": "error"}

        await self._record(case, AuditEventKind.AVAILABILITY_CHECKED, {
            "case_id": case.case_id,
            "provider_id": case.provider_id,
            **case.availability,
        })
        return available

    async def _offer_handoff(self, case: EscalationCase, budget: float) -> bool:
        sid = case.session_id
        wait = min(self._handoff_reply_seconds, budget)
        if wait <= 0:
            logger.info("No time left to offer a hand-off for session %s", sid)
            return False

        case.status = EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE
        reply: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._handoff_replies[sid] = reply
        mode = self._contexts[sid]["mode"]
        await self._record(case, AuditEventKind.HANDOFF_OFFERED, {
            "case_id": case.case_id,
            "channel": "voice" if mode == InteractionMode.VOICE else "chat",
        })
        await self._send(case, self._composer.handoff_offer(mode), kind="handoff_offer")
        try:
            return await asyncio.wait_for(reply, timeout=wait)
        except asyncio.TimeoutError:
            logger.info("No hand-off reply for session %s within %.1fs", sid, wait)
            return False
        finally:
            self._handoff_replies.pop(sid, None)

    async def _start_handoff(self, case: EscalationCase) -> None:
        context = self._contexts[case.session_id]
        voice = context["mode"] == InteractionMode.VOICE
        start = self._communication.start_voice if voice else self._communication.start_chat
        try:
            handle = await start(case.patient_id, case.provider_id or "", context)
        except Exception as exc:
            raise HandoffFailure(str(exc)) from exc

        case.handoff_channel = handle.channel
        case.handoff_session = handle.handle_id
        case.path = EscalationPath.IMMEDIATE_CONTACT
        case.status = EscalationStatus.HANDED_OFF
        case.completed_at = self._clock.now()
        self._metrics["handoffs_started"] += 1
        await self._record(case, AuditEventKind.HANDOFF_STARTED, {
            "case_id": case.case_id,
            "channel": handle.channel,
            "handle_id": handle.handle_id,
        })
        await self._notify(case, self._composer.handoff_started(handle.channel))

    async def _fetch_slots(self, case: EscalationCase, budget: float) -> list[AppointmentSlot]:
        # Bounded by the case deadline in _supervise
        if budget <= 0:
            return []
        try:
            slots = await self._appointments.get_slots(
                case.provider_id or "", urgent=True, modes=("in_person", "video"),
            )
        except Exception as exc:
            logger.warning("Slot lookup for session %s failed: %s", case.session_id, exc)
            return []
        return sorted(slots, key=lambda s: s.start)[:3]

    async def _emergency_fallback(self, sid: str, reason: str) -> None:
        case = self._cases.get(sid)
        if case is None or case.patient_notified:
            return
        case.path = EscalationPath.EMERGENCY_FALLBACK
        case.status = EscalationStatus.EMERGENCY_FALLBACK
        case.completed_at = self._clock.now()
        self._metrics["emergency_fallbacks"] += 1
        logger.warning("Emergency fallback for session %s (%s)", sid, reason)
        await self._record(case, AuditEventKind.EMERGENCY_FALLBACK, {
            "case_id": case.case_id, "reason": reason,
        })
        message = self._composer.emergency_fallback()
        try:
            await asyncio.wait_for(self._notify(case, message), timeout=self._fallback_notify_timeout)
        except asyncio.TimeoutError:
            # The guidance stays on the case for polling
            logger.error(
                "Emergency guidance for case %s not delivered within %.1fs — available by polling",
                case.case_id, self._fallback_notify_timeout,
            )
            self._mark_notified(case)
        # The provider must hear about this case even if every alert attempt failed
        if self._alert_state.get(sid) == "failed":
            self._alert_state[sid] = "pending"
            self._spawn(self._send_provider_alert(sid))

    # ── Provider alert ──

    async def _send_provider_alert(self, sid: str) -> None:
        """
        Deliver the provider alert, retrying with backoff until the case
        deadline.  A case that fell back to emergency guidance gets one more
        attempt after the window closes.
        """
        case = self._cases.get(sid) or self._closed.get(sid)
        if case is None or self._alert_state.get(sid) == "sent":
            return
        context = self._contexts.get(sid, {})
        alert = ProviderAlert(
            patient_id=case.patient_id,
            provider_id=case.provider_id or "",
            session_id=sid,
            case_id=case.case_id,
            findings=case.findings,
            summary=self._summary(case, context),
            created_at=self._clock.now(),
        )
        loop = asyncio.get_running_loop()
        give_up_at = self._alert_deadlines.get(sid, loop.time())
        delay = self._alert_retry_delay
        extended = False
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    await asyncio.wait_for(
                        self._communication.alert_provider(alert), timeout=self._alert_timeout,
                    )
                    break
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                    await self._record(case, AuditEventKind.PROVIDER_ALERT_FAILED, {
                        "case_id": case.case_id,
                        "provider_id": case.provider_id,
                        "attempt": attempt,
                        "error": error,
                    })
                if loop.time() + delay <= give_up_at:
                    logger.warning(
                        "Provider alert for case %s failed (attempt %d): %s — retrying in %.2fs",
                        case.case_id, attempt, error, delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, ALERT_RETRY_MAX_DELAY)
                    continue
                if case.status == EscalationStatus.EMERGENCY_FALLBACK and not extended:
                    extended = True
                    await asyncio.sleep(delay)
                    continue
                self._alert_state[sid] = "failed"
                self._metrics["provider_alert_failures"] += 1
                logger.error(
                    "Provider alert for case %s failed after %d attempts: %s",
                    case.case_id, attempt, error,
                )
                return

            self._alert_state[sid] = "sent"
            case.provider_alerted_at = self._clock.now()
            self._metrics["provider_alerts_sent"] += 1
            await self._record(case, AuditEventKind.PROVIDER_ALERT, {
                "case_id": case.case_id, "provider_id": case.provider_id, "attempts": attempt,
            })
        finally:
            self._release_alert(sid)

    @staticmethod
    def _summary(case: EscalationCase, context: dict[str, Any]) -> str:
        symptoms = ", ".join(
            f"{s['name']} ({s['severity']}/10)" for s in context.get("symptoms", [])
        ) or "no symptoms extracted"
        flags = ", ".join(f.type for f in case.findings) or case.reason
        return f"Urgent triage: {flags}. Reported: {symptoms}."

    # ── Internal ──

    def _require(self, session_id: str) -> EscalationCase:
        case = self._cases.get(session_id)
        if case is None:
            raise SessionNotFound(session_id)
        return case

    def _close(self, sid: str) -> None:
        case = self._cases.pop(sid, None)
        if case is None:
            return
        self._closed[sid] = case
        while len(self._closed) > self._closed_cache_size:
            self._closed.popitem(last=False)
        self._slots.pop(sid, None)
        self._workflows.pop(sid, None)
        self._orphaned.discard(sid)
        event = self._outcomes.pop(sid, None)
        if event is not None:
            event.set()
        self._release_alert(sid)

    async def _close_released(self, case: EscalationCase) -> None:
        await self._record(case, AuditEventKind.ESCALATION_CLOSED, {
            "case_id": case.case_id,
            "status": case.status.value,
            "reason": "session_ended",
        })
        logger.info("Closed case %s for ended session %s (%s)", case.case_id, case.session_id, case.status.value)
        self._close(case.session_id)

    def _release_alert(self, sid: str) -> None:
        """Drop per-case alert state once the case is closed and no alert is in flight."""
        if sid in self._cases or self._alert_state.get(sid) == "pending":
            return
        self._alert_state.pop(sid, None)
        self._alert_deadlines.pop(sid, None)
        self._contexts.pop(sid, None)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)

    async def _notify(self, case: EscalationCase, message: str, **metadata: Any) -> None:
        """Tell the patient what happens next; marks the case as notified."""
        case.patient_message = message
        await self._send(case, message, kind="outcome", **metadata)
        self._mark_notified(case)

    def _mark_notified(self, case: EscalationCase) -> None:
        case.patient_notified_at = self._clock.now()
        event = self._outcomes.get(case.session_id)
        if event is not None:
            event.set()

    async def _send(self, case: EscalationCase, message: str, *, kind: str, **metadata: Any) -> None:
        channel = self._contexts.get(case.session_id, {}).get("channel", "app")
        result = await self._notifiers.dispatch(PatientMessage(
            patient_id=case.patient_id,
            session_id=case.session_id,
            channel=channel,
            message=message,
            metadata={"case_id": case.case_id, "status": case.status.value, "kind": kind, **metadata},
        ))
        if not result.success:
            logger.warning(
                "Patient notification for case %s not delivered: %s — available by polling",
                case.case_id, result.error,
            )

    async def _record(self, case: EscalationCase, kind: AuditEventKind, detail: dict[str, Any]) -> None:
        await safe_record(self._audit, AuditEvent(
            kind=kind,
            session_id=case.session_id,
            patient_id=case.patient_id,
            detail=detail,
            timestamp=self._clock.now(),
        ))

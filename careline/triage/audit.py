"""
Audit sinks — append-only destinations for AuditEvents.

Audit storage itself lives outside the engine; these two sinks cover
development (in-memory) and log-shipping deployments (one JSON line per
event on the ``triage.audit`` logger).
"""

from __future__ import annotations

import logging

from careline.triage.collaborators import AuditSink
from careline.triage.events import AuditEvent, AuditEventKind

logger = logging.getLogger("triage.audit")


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event.model_copy(deep=True))

    def of_kind(
        self, kind: AuditEventKind, session_id: str | None = None
    ) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.kind == kind and (session_id is None or e.session_id == session_id)
        ]


class LoggingAuditSink(AuditSink):
    async def record(self, event: AuditEvent) -> None:
        logger.info(event.model_dump_json())


async def safe_record(sink: AuditSink, event: AuditEvent) -> None:
    """Write an audit event; a failing sink is logged, never fatal."""
    try:
        await sink.record(event)
    except Exception as exc:
        logger.error(
            "Audit sink failed for %s (session %s): %s",
            event.kind.value, event.session_id, exc,
            exc_info=True,
        )

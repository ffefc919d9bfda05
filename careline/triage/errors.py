"""
Triage error taxonomy.

Transient collaborator failures (AdapterTimeout, AdapterUnavailable,
ProviderUnavailable, HandoffFailure) are recovered locally by the component
that calls the collaborator.  Safety-relevant uncertainty
(AmbiguousClassification, RedFlagEvaluationFailure) always biases toward
Tier 3.  Only session-level errors reach the client-facing layer.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for every engine error."""

    # Wording shown to patients. Never exposes internal state and always
    # names a fallback action.
    user_message: str = (
        "Something went wrong on our side. Please try again, or if you feel "
        "unwell call your local emergency number."
    )


class AdapterTimeout(TriageError):
    """The classifier (or another adapter) overran its response envelope."""


class AdapterUnavailable(TriageError):
    """The classifier (or another adapter) raised or could not be reached."""


class AmbiguousClassification(TriageError):
    """Confidence stayed below threshold after the follow-up cap."""


class RedFlagEvaluationFailure(TriageError):
    """Red-flag rules could not be evaluated against the supplied data."""


class ProviderUnavailable(TriageError):
    """Provider availability could not be confirmed in time."""


class HandoffFailure(TriageError):
    """Chat/voice hand-off to the provider could not be started."""


class DeadlineExceeded(TriageError):
    """An escalation did not reach patient notification before its deadline."""


class SessionNotFound(TriageError):
    """No active session for the identifier and creation was not allowed."""

    user_message = (
        "We couldn't find that conversation. Please start a new one, or if "
        "you feel unwell call your local emergency number."
    )

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class OutOfOrderUtterance(TriageError):
    """An utterance arrived with a stale, duplicate or unfillable sequence number."""

    user_message = (
        "Some of your messages arrived out of order. Please resend your "
        "last message."
    )

    def __init__(self, session_id: str, expected: int, received: int) -> None:
        super().__init__(
            f"Session {session_id}: expected sequence {expected}, got {received}"
        )
        self.session_id = session_id
        self.expected = expected
        self.received = received


class SessionAbandoned(TriageError):
    """The session timed out while the utterance was being processed."""

    user_message = (
        "This conversation timed out. Please start a new one, or switch to a "
        "phone call with your care team."
    )

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} was abandoned")
        self.session_id = session_id

"""
Response Composer — deterministic patient-facing wording.

Every message that could leave a patient without an answer names a
fallback action (try again, switch channel, or call the emergency number).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from careline import settings
from careline.triage.collaborators import Appointment, AppointmentSlot
from careline.triage.models import (
    ConversationSession,
    EscalationCase,
    EscalationStatus,
    InteractionMode,
)
from careline.triage.router import RoutingDecision

# (key, question): asked in order, each at most once per session
FOLLOW_UP_BANK: list[tuple[str, str]] = [
    ("main_symptom", "Can you tell me what symptom is bothering you most right now?"),
    ("onset", "When did this start, and did it come on suddenly or gradually?"),
    ("severity", "On a scale of 1 to 10, how bad is it at the moment?"),
    ("medications", "Are you taking any medicines for this, or any regular prescriptions?"),
    ("change", "Is it getting better, worse, or staying the same?"),
]

CLARIFY_QUESTIONS: list[str] = [
    "I want to make sure I understand. Could you describe what's happening in a bit more detail?",
    "Is your question about a symptom you're having, or about one of your medicines?",
]

GENERAL_ADVICE: dict[str, str] = {
    "headache": "For a mild headache, rest, drink water and try a standard dose of a simple painkiller if you normally can.",
    "fever": "For a mild fever, rest, drink plenty of fluids and keep cool.",
    "cough": "Most coughs clear up within three weeks. Warm drinks and honey can help soothe it.",
    "sore throat": "Gargling salt water, drinking fluids and resting usually help a sore throat settle within a week.",
    "cold": "Colds usually clear up within a week or two. Rest, fluids and steam can ease the symptoms.",
    "nausea": "Sip water slowly, eat small plain meals and avoid strong smells until the nausea settles.",
    "vomiting": "Take small, frequent sips of water to avoid dehydration.",
    "diarrhea": "Drink plenty of fluids and eat small plain meals. It usually settles in a few days.",
    "fatigue": "Regular sleep, balanced meals and gentle activity can help with tiredness.",
    "back pain": "Stay gently active, use heat packs and avoid long periods of sitting.",
    "joint pain": "Rest the joint, use a cold pack for swelling and keep it gently moving.",
    "insomnia": "Keep a regular sleep routine and avoid screens and caffeine before bed.",
    "anxiety": "Slow breathing, regular exercise and talking to someone you trust can help with anxiety.",
    "rash": "Keep the area clean and cool and avoid scratching or new skin products.",
    "dizziness": "Sit or lie down until it passes and stand up slowly.",
    "abdominal pain": "Rest, sip water and avoid heavy meals until the discomfort eases.",
}

GENERIC_ADVICE = "Rest, stay hydrated and keep an eye on how you feel."

SAFETY_NET = (
    "If your symptoms get worse or you notice anything new, message us again. "
    "In an emergency call {number}."
)


class ResponseComposer:
    def __init__(self, emergency_number: str = settings.EMERGENCY_CONTACT_NUMBER) -> None:
        self.emergency_number = emergency_number

    # ── Follow-ups ──

    def follow_up(self, session: ConversationSession) -> tuple[str, str]:
        """Pick the most useful question not yet asked → (key, question)."""
        asked = set(session.asked_follow_ups)
        symptoms = list(session.symptoms.values())
        wanted: list[str] = []
        if not symptoms:
            wanted.append("main_symptom")
        if symptoms and not any(s.onset for s in symptoms):
            wanted.append("onset")
        if symptoms:
            wanted.append("severity")
        if not any(s.medications for s in symptoms):
            wanted.append("medications")
        wanted.append("change")

        bank = dict(FOLLOW_UP_BANK)
        for key in wanted:
            if key not in asked:
                return key, bank[key]
        for key, question in FOLLOW_UP_BANK:
            if key not in asked:
                return key, question
        index = len(asked) % len(CLARIFY_QUESTIONS)
        return f"clarify_{len(asked)}", CLARIFY_QUESTIONS[index]

    # ── Tier 1 / Tier 2 ──

    def general_education(self, session: ConversationSession) -> str:
        advice = [GENERAL_ADVICE[name] for name in session.symptoms if name in GENERAL_ADVICE]
        body = " ".join(advice) if advice else GENERIC_ADVICE
        return f"{body} {self._safety_net()}"

    def medication_guidance(self, decision: RoutingDecision, medications: list[str]) -> str:
        if decision.withhold_dosage:
            return (
                "I can't see your prescription record right now, so I won't give "
                "dose advice yet. Please follow the instructions on your medicine's "
                "label or ask your pharmacist, and try again in a few minutes. "
                f"In an emergency call {self.emergency_number}."
            )

        parts: list[str] = []
        for p in decision.prescription_matches:
            line = f"Your record shows {p.name}"
            if p.dose:
                line += f" {p.dose}"
            if p.schedule:
                line += f", {p.schedule}"
            parts.append(line + ".")
            if p.instructions:
                parts.append(p.instructions.rstrip(".") + ".")

        matched = {p.name.lower() for p in decision.prescription_matches}
        for med in medications:
            if med.lower() not in matched and not any(med.lower() in m for m in matched):
                parts.append(
                    f"{med.capitalize()} isn't on your current prescription list, so check "
                    "with your pharmacist before taking it."
                )

        for drug, other, warning in decision.interactions:
            parts.append(f"Taking {drug} with {other} {warning}. Please check with your pharmacist first.")

        if not parts:
            parts.append(
                "I couldn't match that to a medicine on your record. Please check "
                "the label or ask your pharmacist."
            )
        return " ".join(parts) + " " + self._safety_net()

    # ── Escalation ──

    def escalation_started(self, mode: InteractionMode) -> str:
        return (
            "Based on what you've told me, I'd like a clinician to look at this "
            "straight away. I'm contacting your care team now. If you feel worse "
            f"at any point, call {self.emergency_number} immediately."
        )

    def handoff_offer(self, mode: InteractionMode) -> str:
        channel = "call" if mode == InteractionMode.VOICE else "chat"
        return f"A clinician is available now. Would you like to {channel} with them?"

    def handoff_started(self, channel: str) -> str:
        verb = "calling you now" if channel == "voice" else "joining this chat now"
        return (
            f"You're being connected. A clinician is {verb}. If the connection "
            f"drops, call {self.emergency_number}."
        )

    def appointment_offer(self, slots: list[AppointmentSlot]) -> str:
        options = "; ".join(
            f"{self._when(s.start)} ({s.mode.replace('_', ' ')})" for s in slots
        )
        return (
            f"No clinician is free to talk right now, but I can book you an urgent "
            f"appointment: {options}. Reply with the one you'd like. If you feel "
            f"worse before then, call {self.emergency_number}."
        )

    def appointment_booked(self, appointment: Appointment) -> str:
        slot = appointment.slot
        return (
            f"You're booked for {self._when(slot.start)} ({slot.mode.replace('_', ' ')}). "
            f"If you feel worse before then, call {self.emergency_number}."
        )

    def emergency_fallback(self) -> str:
        return (
            "I couldn't reach a clinician quickly enough. Please call "
            f"{self.emergency_number} now or go to your nearest emergency department. "
            "Your care team has been alerted."
        )

    def escalation_status(self, case: Optional[EscalationCase]) -> str:
        if case is None or case.status in (
            EscalationStatus.PENDING,
            EscalationStatus.CHECKING_AVAILABILITY,
            EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE,
        ):
            return (
                "I'm still connecting you with your care team. If you feel worse, "
                f"call {self.emergency_number} immediately."
            )
        return case.patient_message or self.emergency_fallback()

    # ── Internal ──

    def _safety_net(self) -> str:
        return SAFETY_NET.format(number=self.emergency_number)

    @staticmethod
    def _when(start: datetime) -> str:
        return start.strftime("%a %d %b %H:%M")

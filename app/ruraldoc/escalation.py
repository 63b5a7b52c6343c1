"""Assembles emergency escalation payloads.

Dialing, SMS, speech and map lookups happen outside the core; this module only
builds what those native capabilities need.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from ruraldoc.languages import speech_locale
from ruraldoc.schemas import (
    AnalysisResult,
    EmergencyMessage,
    EscalationPayload,
    NearbyHelpQuery,
    PatientProfile,
)

EscalationDispatcher = Callable[[EscalationPayload], Awaitable[None]]

NEARBY_HELP_INTENTS = ("hospital", "pharmacy")
SYMPTOM_PREVIEW_CHARS = 50


def _clean_hint(location_hint: str | None) -> str | None:
    hint = (location_hint or "").strip()
    return hint or None


class EmergencyEscalator:
    @staticmethod
    def nearby_help(result: AnalysisResult, location_hint: str | None) -> list[NearbyHelpQuery]:
        if result.risk_level == "LOW" and not result.is_emergency:
            return []
        hint = _clean_hint(location_hint)
        return [NearbyHelpQuery(intent=intent, location_hint=hint) for intent in NEARBY_HELP_INTENTS]

    @staticmethod
    def speech_text(result: AnalysisResult) -> str:
        title = (result.risk_level_translated or "").strip() or "EMERGENCY"
        return f"{title}. {result.explanation}"

    @staticmethod
    def message_body(
        profile: PatientProfile | None,
        result: AnalysisResult,
        symptoms: str,
        location_hint: str | None,
    ) -> str:
        name = profile.name if profile else "Patient"
        age = profile.age if profile else "?"
        return (
            f"EMERGENCY ALERT: {name} (Age {age}) needs help!\n"
            f"Symptoms: {symptoms[:SYMPTOM_PREVIEW_CHARS]}...\n"
            f"Risk: {result.risk_level}\n"
            f"Loc: {_clean_hint(location_hint) or 'Unknown'}"
        )

    def build(
        self,
        profile: PatientProfile | None,
        result: AnalysisResult,
        *,
        symptoms: str,
        location_hint: str | None = None,
        language: str | None = None,
    ) -> EscalationPayload:
        return EscalationPayload(
            profile_id=profile.id if profile else None,
            speech_text=self.speech_text(result),
            speech_locale=speech_locale(language or result.language),
            message=EmergencyMessage(
                recipient_name=profile.emergency_contact_name if profile else "",
                recipient_number=profile.emergency_contact_number if profile else "",
                body=self.message_body(profile, result, symptoms, location_hint),
            ),
            nearby_help=[
                NearbyHelpQuery(intent=intent, location_hint=_clean_hint(location_hint))
                for intent in NEARBY_HELP_INTENTS
            ],
        )

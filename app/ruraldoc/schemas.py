"""Pydantic schemas for RuralDoc endpoints and internal contracts."""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ruraldoc.utils import time_id, utc_now


RiskLevel = Literal["LOW", "MEDIUM", "HIGH", "EMERGENCY"]
TrendDirection = Literal["IMPROVING", "WORSENING", "STABLE"]

UNKNOWN_PROFILE_MARKER = "Profile: Unknown"


class ConsultationState(str, Enum):
    IDLE = "IDLE"
    AWAITING_ORACLE = "AWAITING_ORACLE"
    FOLLOW_UP_PENDING = "FOLLOW_UP_PENDING"
    FINALIZED = "FINALIZED"
    OFFLINE_REDIRECT = "OFFLINE_REDIRECT"


def _as_flag(value: Any) -> Any:
    """Read "true"/"false" strings and 0/1 the way the oracle sometimes sends booleans."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0", ""}:
            return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return bool(value)
    if value is None:
        return False
    return value


class OracleModel(BaseModel):
    """Shape shared with the oracle's JSON: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PatientProfile(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(default_factory=time_id, min_length=1)
    name: str = Field(min_length=1)
    age: int = Field(ge=0, le=150)
    gender: str = ""
    known_conditions: str = ""
    emergency_contact_name: str = ""
    emergency_contact_number: str = Field(min_length=1)

    def summary_line(self) -> str:
        return (
            f"Patient: {self.name}, Age: {self.age}, Gender: {self.gender}, "
            f"Conditions: {self.known_conditions or 'None'}"
        )


DEMO_PROFILE = PatientProfile(
    id="demo_1",
    name="Demo Patient",
    age=45,
    gender="Male",
    known_conditions="BP",
    emergency_contact_name="Emergency",
    emergency_contact_number="9999999999",
)


class AnalysisResult(OracleModel):
    is_emergency: bool
    needs_follow_up: bool
    follow_up_questions: list[str] = Field(default_factory=list)
    condition_name: str = ""
    risk_level: RiskLevel
    risk_level_translated: str | None = None
    risk_score: int = 0
    explanation: str
    first_aid_steps: list[str]
    what_not_to_do: list[str] = Field(default_factory=list)
    care_recommendation: str
    language: str = "en"

    @model_validator(mode="before")
    @classmethod
    def _normalize_risk(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        risk_key = "risk_level" if "risk_level" in data else "riskLevel"
        raw = data.get(risk_key)
        if isinstance(raw, str):
            data[risk_key] = raw.strip().upper()
        for flag in ("isEmergency", "is_emergency", "needsFollowUp", "needs_follow_up"):
            if flag in data:
                data[flag] = _as_flag(data[flag])
        if data.get("isEmergency", data.get("is_emergency")) is True:
            data[risk_key] = "EMERGENCY"
        return data

    @field_validator("follow_up_questions", "what_not_to_do", mode="before")
    @classmethod
    def _lenient_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, list):
            return [str(item) for item in value if item is not None]
        return value

    @field_validator("condition_name", mode="before")
    @classmethod
    def _none_as_blank(cls, value: Any) -> Any:
        return "" if value is None else str(value)

    @field_validator("risk_level_translated", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("risk_score", mode="before")
    @classmethod
    def _lenient_score(cls, value: Any) -> int:
        # Scores arrive as ints, floats or numeric strings; anything else reads as 0.
        if isinstance(value, bool):
            return 0
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                return 0
        if isinstance(value, (int, float)) and math.isfinite(value):
            return int(round(value))
        return 0

    def context_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def fallback_analysis_result(language: str) -> AnalysisResult:
    return AnalysisResult(
        is_emergency=False,
        needs_follow_up=False,
        condition_name="Error",
        risk_level="LOW",
        risk_level_translated="Error",
        risk_score=0,
        explanation="Connection error. Please try again.",
        first_aid_steps=["Visit a doctor."],
        what_not_to_do=[],
        care_recommendation="Consult a doctor.",
        language=language,
    )


class ConsultationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    profile_id: str | None = None
    date: str
    timestamp: int
    symptoms: str
    diagnosis: AnalysisResult | None = None
    image_preview: str | None = None


class TrendPoint(BaseModel):
    date: str
    symptoms: str
    risk_level: RiskLevel | None = None

    @classmethod
    def from_record(cls, record: ConsultationRecord) -> "TrendPoint":
        return cls(
            date=record.date,
            symptoms=record.symptoms,
            risk_level=record.diagnosis.risk_level if record.diagnosis else None,
        )


class TrendAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    trend: TrendDirection
    summary: str
    advice: str

    @field_validator("trend", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


def fallback_trend_result() -> TrendAnalysisResult:
    return TrendAnalysisResult(trend="STABLE", summary="Analysis failed.", advice="Consult a doctor.")


class TrendOutcome(BaseModel):
    status: Literal["ok", "insufficient_history"]
    profile_id: str
    records_considered: int = 0
    result: TrendAnalysisResult | None = None
    message: str | None = None


class NearbyHelpQuery(BaseModel):
    intent: Literal["hospital", "pharmacy"]
    location_hint: str | None = None


class EmergencyMessage(BaseModel):
    recipient_name: str
    recipient_number: str
    body: str


class EscalationPayload(BaseModel):
    profile_id: str | None = None
    speech_text: str
    speech_locale: str
    message: EmergencyMessage
    nearby_help: list[NearbyHelpQuery] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class SubmitOutcome(BaseModel):
    state: ConsultationState
    epoch: int
    result: AnalysisResult | None = None
    follow_up_questions: list[str] = Field(default_factory=list)
    record: ConsultationRecord | None = None
    escalation: EscalationPayload | None = None
    nearby_help: list[NearbyHelpQuery] = Field(default_factory=list)
    stale: bool = False


class SubmitRequest(BaseModel):
    text: str = ""
    image_b64: str | None = None
    is_follow_up: bool = False
    language: str | None = None


class ConnectivityUpdate(BaseModel):
    online: bool


class LocationUpdate(BaseModel):
    location_hint: str | None = None

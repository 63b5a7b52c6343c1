"""Gemini clients for symptom analysis and health-trend summaries.

Both services always answer: transport errors, missing keys and malformed payloads
degrade to a fixed low-risk fallback instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

from ruraldoc.config import Settings
from ruraldoc.languages import language_name
from ruraldoc.schemas import (
    UNKNOWN_PROFILE_MARKER,
    AnalysisResult,
    PatientProfile,
    TrendAnalysisResult,
    TrendPoint,
    fallback_analysis_result,
    fallback_trend_result,
)
from ruraldoc.utils import encode_image_b64

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

ANALYSIS_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "isEmergency": {"type": "BOOLEAN"},
        "needsFollowUp": {"type": "BOOLEAN"},
        "followUpQuestions": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Max 2 questions in TARGET LANGUAGE.",
        },
        "conditionName": {"type": "STRING", "description": "Condition name in TARGET LANGUAGE."},
        "riskLevel": {"type": "STRING", "enum": ["LOW", "MEDIUM", "HIGH", "EMERGENCY"]},
        "riskLevelTranslated": {"type": "STRING", "description": "Translated Risk Level."},
        "riskScore": {"type": "INTEGER"},
        "explanation": {"type": "STRING", "description": "Max 2 sentences in TARGET LANGUAGE."},
        "firstAidSteps": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Max 5 bullet points in TARGET LANGUAGE.",
        },
        "whatNotToDo": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Max 3 bullet points in TARGET LANGUAGE.",
        },
        "careRecommendation": {"type": "STRING", "description": "1 sentence in TARGET LANGUAGE."},
    },
    "required": [
        "isEmergency",
        "needsFollowUp",
        "riskLevel",
        "explanation",
        "firstAidSteps",
        "careRecommendation",
    ],
}

TREND_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "trend": {"type": "STRING", "enum": ["IMPROVING", "WORSENING", "STABLE"]},
        "summary": {"type": "STRING"},
        "advice": {"type": "STRING"},
    },
    "required": ["trend", "summary", "advice"],
}


def build_system_instruction(language: str) -> str:
    return (
        "Role: 'Rural AI Doctor'. Goal: Fast, Safe Triage.\n\n"
        "INSTRUCTIONS:\n"
        "1. Analyze input (Text/Audio/Image) & Context.\n"
        "2. REASON internally in English to check for Emergencies.\n"
        f"3. OUTPUT JSON strictly in {language_name(language)}.\n\n"
        "CONSTRAINTS:\n"
        "- Max 5 First Aid Steps.\n"
        "- Max 3 'What Not To Do' points.\n"
        "- Max 2 Follow-up questions (only if critical info missing).\n"
        "- Explanation: Concise, under 30 words.\n"
        "- EMERGENCY if: Chest pain, Stroke signs, Heavy bleeding, Unconscious.\n\n"
        "Output JSON ONLY."
    )


def build_analysis_text(symptoms: str, context: str, profile: PatientProfile | None) -> str:
    profile_line = profile.summary_line() if profile else UNKNOWN_PROFILE_MARKER
    return f"{profile_line}\nHistory: {context}\nInput: {symptoms}"


def build_trend_prompt(points: list[TrendPoint], language: str, profile: PatientProfile) -> str:
    history_text = "\n".join(f"{p.date}: {p.symptoms} (Risk: {p.risk_level})" for p in points)
    return (
        f"Analyze health trend for {profile.name} ({profile.age}).\n"
        f"History:\n{history_text}\n\n"
        "Task: IMPROVING, WORSENING, or STABLE?\n"
        f"Output concise JSON in {language_name(language)}."
    )


class GeminiClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self._settings.gemini_model

    async def _call_model(self, model_name: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{GEMINI_BASE_URL}/{model_name}:generateContent"
        async with httpx.AsyncClient(
            timeout=self._settings.request_timeout_sec,
            transport=self._transport,
        ) as client:
            response = await client.post(url, params={"key": self._settings.gemini_api_key}, json=body)
            response.raise_for_status()
            return response.json()

    async def _call_gemini_json(self, body: dict[str, Any]) -> dict[str, Any] | None:
        model_name = self._settings.gemini_model
        fallback_model = self._settings.gemini_fallback_model
        try:
            data = await self._call_model(model_name, body)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in {401, 403, 404} and fallback_model and model_name != fallback_model:
                logger.warning("gemini_model_retry: %s returned %s; retrying %s", model_name, status, fallback_model)
                data = await self._call_model(fallback_model, body)
            else:
                raise

        candidates = data.get("candidates") or []
        if not candidates:
            return None

        parts = (((candidates[0] or {}).get("content") or {}).get("parts")) or []
        text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()
        if not text:
            return None
        return self._extract_json(text)

    @staticmethod
    def _extract_json(text: str) -> dict[str, Any] | None:
        cleaned = text.strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```[a-zA-Z]*\n?", "", cleaned)
            cleaned = re.sub(r"\n?```$", "", cleaned).strip()

        try:
            parsed = json.loads(cleaned)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                parsed = json.loads(cleaned[start : end + 1])
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                return None
        return None


class GeminiAnalysisService(GeminiClient):
    def _build_body(
        self,
        symptoms: str,
        image: bytes | None,
        language: str,
        context: str,
        profile: PatientProfile | None,
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if image:
            parts.append({"inlineData": {"mimeType": "image/jpeg", "data": encode_image_b64(image)}})
        parts.append({"text": build_analysis_text(symptoms, context, profile)})
        return {
            "systemInstruction": {"parts": [{"text": build_system_instruction(language)}]},
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": ANALYSIS_RESPONSE_SCHEMA,
            },
        }

    @staticmethod
    def parse_result(payload: dict[str, Any] | None, language: str) -> AnalysisResult | None:
        if not payload:
            return None
        try:
            result = AnalysisResult.model_validate(payload)
        except ValidationError as exc:
            logger.warning("gemini_analysis_invalid_payload: %s error(s)", exc.error_count())
            return None
        return result.model_copy(update={"language": language})

    async def analyze(
        self,
        symptoms: str,
        image: bytes | None,
        language: str,
        context: str,
        profile: PatientProfile | None,
    ) -> AnalysisResult:
        if not self._settings.gemini_api_key:
            logger.warning("gemini_api_key_missing; using fallback analysis")
            return fallback_analysis_result(language)

        body = self._build_body(symptoms, image, language, context, profile)
        try:
            result = self.parse_result(await self._call_gemini_json(body), language)
            if result is not None:
                return result
            logger.warning("gemini_fallback: empty or malformed analysis response")
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            logger.warning("gemini_fallback: HTTPStatusError status=%s", status)
        except Exception as exc:
            logger.warning("gemini_fallback: %s: %s", type(exc).__name__, exc)
        return fallback_analysis_result(language)


class GeminiTrendService(GeminiClient):
    async def summarize(
        self,
        points: list[TrendPoint],
        language: str,
        profile: PatientProfile,
    ) -> TrendAnalysisResult:
        if not self._settings.gemini_api_key:
            logger.warning("gemini_api_key_missing; using fallback trend")
            return fallback_trend_result()

        body = {
            "contents": [{"parts": [{"text": build_trend_prompt(points, language, profile)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": TREND_RESPONSE_SCHEMA,
            },
        }
        try:
            parsed = await self._call_gemini_json(body)
            if parsed:
                return TrendAnalysisResult.model_validate(parsed)
            logger.warning("gemini_trend_fallback: empty response")
        except ValidationError as exc:
            logger.warning("gemini_trend_fallback: invalid payload, %s error(s)", exc.error_count())
        except Exception as exc:
            logger.warning("gemini_trend_fallback: %s: %s", type(exc).__name__, exc)
        return fallback_trend_result()

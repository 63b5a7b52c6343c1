from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from ruraldoc.config import Settings
from ruraldoc.schemas import AnalysisResult, TrendAnalysisResult


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "local_storage_dir": str(tmp_path),
        "s3_bucket": None,
        "gemini_api_key": None,
        "oracle_timeout_sec": 2.0,
        "escalation_delay_sec": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_result(**overrides: Any) -> AnalysisResult:
    values: dict[str, Any] = {
        "is_emergency": False,
        "needs_follow_up": False,
        "condition_name": "Tension headache",
        "risk_level": "LOW",
        "risk_score": 2,
        "explanation": "Likely a mild tension headache.",
        "first_aid_steps": ["Rest in a quiet room.", "Drink water."],
        "what_not_to_do": ["Do not skip meals."],
        "care_recommendation": "See a doctor if it lasts more than 3 days.",
        "language": "en",
    }
    values.update(overrides)
    return AnalysisResult(**values)


class ScriptedAnalysis:
    """Returns queued results in order; the last one repeats."""

    def __init__(self, *results: AnalysisResult):
        self._results = list(results)
        self.calls: list[dict[str, Any]] = []

    async def analyze(self, symptoms, image, language, context, profile):
        self.calls.append(
            {
                "symptoms": symptoms,
                "image": image,
                "language": language,
                "context": context,
                "profile": profile,
            }
        )
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


class GatedAnalysis:
    """Blocks inside analyze() until the test releases it."""

    def __init__(self, result: AnalysisResult):
        self._result = result
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def analyze(self, symptoms, image, language, context, profile):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self._result


class RecordingTrendService:
    def __init__(self, result: TrendAnalysisResult | None = None, error: Exception | None = None):
        self.calls: list[dict[str, Any]] = []
        self._result = result or TrendAnalysisResult(
            trend="WORSENING", summary="More severe.", advice="See a doctor."
        )
        self._error = error

    async def summarize(self, points, language, profile):
        self.calls.append({"points": points, "language": language, "profile": profile})
        if self._error:
            raise self._error
        return self._result

"""Longitudinal health-trend summaries over a profile's consultation history."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ruraldoc.config import Settings
from ruraldoc.history import HistoryStore, ProfileStore
from ruraldoc.schemas import (
    PatientProfile,
    TrendAnalysisResult,
    TrendOutcome,
    TrendPoint,
    fallback_trend_result,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_HISTORY_MESSAGE = "At least two consultations are needed to analyze a health trend."


class TrendService(Protocol):
    async def summarize(
        self,
        points: list[TrendPoint],
        language: str,
        profile: PatientProfile,
    ) -> TrendAnalysisResult: ...


class TrendAnalyzer:
    def __init__(
        self,
        service: TrendService,
        history: HistoryStore,
        profiles: ProfileStore,
        *,
        settings: Settings,
    ):
        self._service = service
        self._history = history
        self._profiles = profiles
        self._settings = settings
        self._latest: dict[str, TrendAnalysisResult] = {}

    async def analyze(self, profile_id: str, language: str | None = None) -> TrendOutcome:
        profile = await self._profiles.get(profile_id)
        records = await self._history.list(profile_id)
        if len(records) < self._settings.trend_min_records:
            logger.info("trend_refused: profile=%s records=%s", profile_id, len(records))
            return TrendOutcome(
                status="insufficient_history",
                profile_id=profile_id,
                records_considered=len(records),
                message=INSUFFICIENT_HISTORY_MESSAGE,
            )

        points = [TrendPoint.from_record(r) for r in records[: self._settings.trend_window]]
        language = language or self._settings.default_language
        try:
            result = await asyncio.wait_for(
                self._service.summarize(points, language, profile),
                timeout=self._settings.oracle_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("trend_timeout: profile=%s", profile_id)
            result = fallback_trend_result()
        except Exception as exc:
            logger.warning("trend_fallback: %s: %s", type(exc).__name__, exc)
            result = fallback_trend_result()

        self._latest[profile_id] = result
        return TrendOutcome(
            status="ok",
            profile_id=profile_id,
            records_considered=len(points),
            result=result,
        )

    def latest(self, profile_id: str) -> TrendAnalysisResult | None:
        return self._latest.get(profile_id)

    def clear(self, profile_id: str) -> None:
        self._latest.pop(profile_id, None)

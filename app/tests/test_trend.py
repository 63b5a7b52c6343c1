import asyncio
from pathlib import Path

import pytest

from stubs import RecordingTrendService, make_result, make_settings
from ruraldoc.errors import ProfileNotFoundError
from ruraldoc.history import HistoryStore, ProfileStore
from ruraldoc.schemas import ConsultationRecord
from ruraldoc.storage import LocalJsonStore
from ruraldoc.trend import TrendAnalyzer


def _record(timestamp: int, risk: str, profile_id: str = "demo_1") -> ConsultationRecord:
    return ConsultationRecord(
        id=str(timestamp),
        profile_id=profile_id,
        date=f"d{timestamp}",
        timestamp=timestamp,
        symptoms=f"symptoms at {timestamp}",
        diagnosis=make_result(risk_level=risk),
    )


def _analyzer(tmp_path: Path, service, records=(), **overrides):
    store = LocalJsonStore(tmp_path)
    history = HistoryStore(store)
    profiles = ProfileStore(store)
    for record in records:
        asyncio.run(history.append(record))
    return TrendAnalyzer(service, history, profiles, settings=make_settings(tmp_path, **overrides))


@pytest.mark.parametrize("count", [0, 1])
def test_trend_refused_with_too_little_history(tmp_path: Path, count: int):
    service = RecordingTrendService()
    records = [_record(100, "LOW")][:count]
    analyzer = _analyzer(tmp_path, service, records)

    outcome = asyncio.run(analyzer.analyze("demo_1"))

    assert outcome.status == "insufficient_history"
    assert outcome.result is None
    assert outcome.records_considered == count
    assert service.calls == []


def test_trend_input_is_newest_first(tmp_path: Path):
    service = RecordingTrendService()
    records = [_record(300, "LOW"), _record(100, "LOW"), _record(200, "HIGH")]
    analyzer = _analyzer(tmp_path, service, records)

    outcome = asyncio.run(analyzer.analyze("demo_1", "mr"))

    points = service.calls[0]["points"]
    assert [p.date for p in points] == ["d300", "d200", "d100"]
    assert [p.risk_level for p in points] == ["LOW", "HIGH", "LOW"]
    assert service.calls[0]["language"] == "mr"
    assert outcome.status == "ok"
    assert outcome.result.trend == "WORSENING"


def test_trend_uses_only_five_most_recent_for_profile(tmp_path: Path):
    service = RecordingTrendService()
    records = [_record(ts, "MEDIUM") for ts in range(100, 800, 100)]
    records.append(_record(900, "HIGH", profile_id="someone_else"))
    analyzer = _analyzer(tmp_path, service, records)

    outcome = asyncio.run(analyzer.analyze("demo_1"))

    assert [p.date for p in service.calls[0]["points"]] == ["d700", "d600", "d500", "d400", "d300"]
    assert outcome.records_considered == 5


def test_trend_service_failure_returns_stable_fallback(tmp_path: Path):
    service = RecordingTrendService(error=RuntimeError("quota exceeded"))
    analyzer = _analyzer(tmp_path, service, [_record(100, "LOW"), _record(200, "LOW")])

    outcome = asyncio.run(analyzer.analyze("demo_1"))

    assert outcome.result.trend == "STABLE"
    assert outcome.result.summary == "Analysis failed."
    assert outcome.result.advice == "Consult a doctor."


def test_slow_trend_service_times_out_into_fallback(tmp_path: Path):
    class SlowTrendService(RecordingTrendService):
        async def summarize(self, points, language, profile):
            await asyncio.sleep(5)
            return await super().summarize(points, language, profile)

    analyzer = _analyzer(
        tmp_path,
        SlowTrendService(),
        [_record(100, "LOW"), _record(200, "HIGH")],
        oracle_timeout_sec=0.05,
    )

    outcome = asyncio.run(analyzer.analyze("demo_1"))

    assert outcome.status == "ok"
    assert outcome.result.trend == "STABLE"
    assert outcome.result.summary == "Analysis failed."
    assert analyzer.latest("demo_1").trend == "STABLE"


def test_latest_trend_can_be_cleared(tmp_path: Path):
    analyzer = _analyzer(tmp_path, RecordingTrendService(), [_record(100, "LOW"), _record(200, "HIGH")])

    asyncio.run(analyzer.analyze("demo_1"))
    assert analyzer.latest("demo_1").trend == "WORSENING"

    analyzer.clear("demo_1")
    assert analyzer.latest("demo_1") is None


def test_trend_for_unknown_profile_raises(tmp_path: Path):
    analyzer = _analyzer(tmp_path, RecordingTrendService())

    with pytest.raises(ProfileNotFoundError):
        asyncio.run(analyzer.analyze("ghost"))

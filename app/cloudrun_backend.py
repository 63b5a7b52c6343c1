"""Cloud Run entrypoint for the RuralDoc consultation API."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ruraldoc.config import Settings, get_settings
from ruraldoc.errors import (
    ConsultationBusyError,
    DuplicateProfileError,
    InvalidSubmissionError,
    PersistenceError,
    ProfileNotFoundError,
)
from ruraldoc.gemini import GeminiAnalysisService, GeminiTrendService
from ruraldoc.history import HistoryStore, ProfileStore
from ruraldoc.orchestration import (
    AnalysisService,
    ConnectivitySignal,
    ConsultationOrchestrator,
    ConsultationSessions,
)
from ruraldoc.schemas import (
    ConnectivityUpdate,
    LocationUpdate,
    PatientProfile,
    SubmitRequest,
)
from ruraldoc.sse import KEEP_ALIVE, format_sse
from ruraldoc.storage import KeyValueStore, S3KeyValueStore, build_store
from ruraldoc.trend import TrendAnalyzer, TrendService
from ruraldoc.utils import decode_image_b64, utc_now

_ERROR_STATUS: dict[type[Exception], int] = {
    InvalidSubmissionError: 422,
    ConsultationBusyError: 409,
    DuplicateProfileError: 409,
    ProfileNotFoundError: 404,
    PersistenceError: 503,
}


class EventHub:
    """Fan-out of consultation events to SSE subscribers, keyed by profile id."""

    def __init__(self) -> None:
        self._queues: dict[str, set[asyncio.Queue[tuple[int, str, dict[str, Any]]]]] = {}
        self._counter = 0

    def subscribe(self, profile_id: str) -> asyncio.Queue[tuple[int, str, dict[str, Any]]]:
        queue: asyncio.Queue[tuple[int, str, dict[str, Any]]] = asyncio.Queue()
        self._queues.setdefault(profile_id, set()).add(queue)
        return queue

    def unsubscribe(self, profile_id: str, queue: asyncio.Queue[tuple[int, str, dict[str, Any]]]) -> None:
        self._queues.get(profile_id, set()).discard(queue)

    async def publish(self, profile_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self._counter += 1
        envelope = {"event": event_name, "timestamp": utc_now().isoformat(), **payload}
        for queue in list(self._queues.get(profile_id, ())):
            queue.put_nowait((self._counter, event_name, envelope))


def create_app(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    analysis: AnalysisService | None = None,
    trend_service: TrendService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or build_store(settings)
    history = HistoryStore(store)
    profiles = ProfileStore(store)
    connectivity = ConnectivitySignal()
    hub = EventHub()
    analysis = analysis or GeminiAnalysisService(settings)
    trend = TrendAnalyzer(
        trend_service or GeminiTrendService(settings),
        history,
        profiles,
        settings=settings,
    )

    def _build_orchestrator(profile_id: str) -> ConsultationOrchestrator:
        async def emit(event_name: str, payload: dict[str, Any]) -> None:
            await hub.publish(profile_id, event_name, payload)

        return ConsultationOrchestrator(
            analysis,
            history,
            profiles,
            settings=settings,
            profile_id=profile_id,
            connectivity=connectivity,
            emit=emit,
        )

    sessions = ConsultationSessions(_build_orchestrator)

    app = FastAPI(title="RuralDoc API (Cloud Run)", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.history = history
    app.state.profiles = profiles
    app.state.sessions = sessions
    app.state.connectivity = connectivity
    app.state.trend = trend

    async def _domain_error(request: Request, exc: Exception) -> JSONResponse:
        status = next(code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls))
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "message": str(exc)},
        )

    for error_cls in _ERROR_STATUS:
        app.add_exception_handler(error_cls, _domain_error)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": utc_now().isoformat(),
            "gemini_model": settings.gemini_model,
            "gemini_key_configured": bool(settings.gemini_api_key),
            "storage": "s3" if isinstance(store, S3KeyValueStore) else "local",
            "online": connectivity.is_online(),
        }

    @app.get("/v1/profiles")
    async def list_profiles() -> list[dict[str, Any]]:
        return [p.model_dump(mode="json") for p in await profiles.list()]

    @app.post("/v1/profiles", status_code=201)
    async def create_profile(profile: PatientProfile) -> dict[str, Any]:
        created = await profiles.create(profile)
        return created.model_dump(mode="json")

    @app.get("/v1/profiles/active")
    async def active_profile() -> dict[str, Any]:
        profile = await profiles.get_active()
        if profile is None:
            raise HTTPException(status_code=404, detail="no active profile")
        return profile.model_dump(mode="json")

    @app.post("/v1/profiles/{profile_id}/activate")
    async def activate_profile(profile_id: str) -> dict[str, Any]:
        profile = await profiles.set_active(profile_id)
        return profile.model_dump(mode="json")

    @app.put("/v1/connectivity")
    async def update_connectivity(update: ConnectivityUpdate) -> dict[str, Any]:
        connectivity.set_online(update.online)
        return {"online": connectivity.is_online()}

    @app.put("/v1/location")
    async def update_location(update: LocationUpdate) -> dict[str, Any]:
        sessions.set_location_hint(update.location_hint)
        return {"location_hint": sessions.location_hint}

    @app.post("/v1/consultations/{profile_id}/submit")
    async def submit(profile_id: str, body: SubmitRequest) -> dict[str, Any]:
        await profiles.get(profile_id)
        image = None
        if body.image_b64:
            try:
                image = decode_image_b64(body.image_b64)
            except ValueError as exc:
                raise HTTPException(status_code=422, detail=str(exc)) from exc
        outcome = await sessions.get(profile_id).submit(
            body.text,
            image,
            is_follow_up=body.is_follow_up,
            language=body.language,
        )
        return outcome.model_dump(mode="json")

    @app.post("/v1/consultations/{profile_id}/reset")
    async def reset(profile_id: str) -> dict[str, Any]:
        await profiles.get(profile_id)
        orchestrator = sessions.get(profile_id)
        await orchestrator.reset()
        return {"state": orchestrator.state.value, "epoch": orchestrator.epoch}

    @app.get("/v1/consultations/{profile_id}/state")
    async def consultation_state(profile_id: str) -> dict[str, Any]:
        await profiles.get(profile_id)
        orchestrator = sessions.get(profile_id)
        result = orchestrator.current_result
        return {
            "state": orchestrator.state.value,
            "epoch": orchestrator.epoch,
            "result": result.model_dump(mode="json") if result else None,
            "escalation_pending": orchestrator.has_pending_escalation,
        }

    @app.get("/v1/consultations/{profile_id}/events")
    async def consultation_events(profile_id: str, request: Request):
        await profiles.get(profile_id)
        queue = hub.subscribe(profile_id)

        async def event_gen():
            try:
                while not await request.is_disconnected():
                    try:
                        event_id, event_name, envelope = await asyncio.wait_for(queue.get(), timeout=15.0)
                        yield format_sse(event_name, envelope, event_id=event_id)
                    except asyncio.TimeoutError:
                        yield KEEP_ALIVE
            finally:
                hub.unsubscribe(profile_id, queue)

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    @app.get("/v1/history")
    async def list_history(profile_id: str | None = None) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in await history.list(profile_id)]

    @app.post("/v1/trend/{profile_id}")
    async def analyze_trend(profile_id: str, language: str | None = None) -> dict[str, Any]:
        outcome = await trend.analyze(profile_id, language)
        return outcome.model_dump(mode="json")

    @app.get("/v1/trend/{profile_id}")
    async def latest_trend(profile_id: str) -> dict[str, Any]:
        result = trend.latest(profile_id)
        return {"profile_id": profile_id, "result": result.model_dump(mode="json") if result else None}

    @app.delete("/v1/trend/{profile_id}")
    async def clear_trend(profile_id: str) -> dict[str, Any]:
        trend.clear(profile_id)
        return {"profile_id": profile_id, "cleared": True}

    return app


app = create_app()

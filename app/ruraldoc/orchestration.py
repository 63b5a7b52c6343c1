"""Multi-turn consultation orchestration.

One ``ConsultationOrchestrator`` drives one conversation: it sequences oracle turns,
decides between follow-up and finalization, records finalized consultations and
requests emergency escalation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from ruraldoc.config import Settings
from ruraldoc.errors import ConsultationBusyError, IllegalTransitionError, InvalidSubmissionError
from ruraldoc.escalation import EmergencyEscalator, EscalationDispatcher
from ruraldoc.history import HistoryStore, ProfileStore
from ruraldoc.schemas import (
    AnalysisResult,
    ConsultationRecord,
    ConsultationState,
    EscalationPayload,
    PatientProfile,
    SubmitOutcome,
    fallback_analysis_result,
)
from ruraldoc.utils import display_date, elapsed_ms, next_timestamp_ms, now_ms

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]


class AnalysisService(Protocol):
    async def analyze(
        self,
        symptoms: str,
        image: bytes | None,
        language: str,
        context: str,
        profile: PatientProfile | None,
    ) -> AnalysisResult: ...


class ConnectivitySignal:
    def __init__(self, online: bool = True):
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = bool(online)


@dataclass(frozen=True)
class StateChange:
    previous: ConsultationState
    current: ConsultationState
    epoch: int


StateListener = Callable[[StateChange], None]

_S = ConsultationState
_TRANSITIONS: dict[ConsultationState, frozenset[ConsultationState]] = {
    _S.IDLE: frozenset({_S.AWAITING_ORACLE, _S.OFFLINE_REDIRECT}),
    _S.AWAITING_ORACLE: frozenset({_S.FOLLOW_UP_PENDING, _S.FINALIZED}),
    _S.FOLLOW_UP_PENDING: frozenset({_S.AWAITING_ORACLE, _S.OFFLINE_REDIRECT}),
    _S.FINALIZED: frozenset({_S.AWAITING_ORACLE, _S.OFFLINE_REDIRECT}),
    _S.OFFLINE_REDIRECT: frozenset({_S.AWAITING_ORACLE, _S.OFFLINE_REDIRECT}),
}


class ConsultationStateMachine:
    """Explicit consultation states plus the epoch used to spot stale oracle replies."""

    def __init__(self) -> None:
        self._state = ConsultationState.IDLE
        self._epoch = 0
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConsultationState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def can_transition(self, target: ConsultationState) -> bool:
        return target in _TRANSITIONS[self._state]

    def transition(self, target: ConsultationState) -> StateChange:
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state.value, target.value)
        return self._set(target)

    def reset(self) -> StateChange:
        """Return to IDLE from any state and start a new epoch."""
        self._epoch += 1
        return self._set(ConsultationState.IDLE)

    def _set(self, target: ConsultationState) -> StateChange:
        change = StateChange(previous=self._state, current=target, epoch=self._epoch)
        self._state = target
        for listener in list(self._listeners):
            listener(change)
        return change


@dataclass(frozen=True)
class UserInput:
    text: str


@dataclass(frozen=True)
class OracleResponse:
    serialized_result: str


class ConversationContext:
    """Transcript of one consultation, rendered as the opaque string the oracle reads."""

    NEW_CONSULTATION_MARKER = "New Consultation."

    def __init__(self) -> None:
        self._entries: list[UserInput | OracleResponse] = []

    @property
    def entries(self) -> tuple[UserInput | OracleResponse, ...]:
        return tuple(self._entries)

    def start(self) -> None:
        self._entries = []

    def clear(self) -> None:
        self._entries = []

    def add_user_answer(self, text: str) -> None:
        self._entries.append(UserInput(text))

    def add_oracle_response(self, result: AnalysisResult) -> None:
        self._entries.append(OracleResponse(result.context_json()))

    def render(self) -> str:
        lines = [self.NEW_CONSULTATION_MARKER]
        for entry in self._entries:
            if isinstance(entry, UserInput):
                lines.append(f"User Answer: {entry.text}")
            else:
                lines.append(f"AI: {entry.serialized_result}")
        return "\n".join(lines)


class ConsultationOrchestrator:
    def __init__(
        self,
        analysis: AnalysisService,
        history: HistoryStore,
        profiles: ProfileStore,
        *,
        settings: Settings,
        profile_id: str | None = None,
        escalator: EmergencyEscalator | None = None,
        connectivity: ConnectivitySignal | None = None,
        dispatcher: EscalationDispatcher | None = None,
        emit: EmitFn | None = None,
    ):
        self._analysis = analysis
        self._history = history
        self._profiles = profiles
        self._settings = settings
        self._profile_id = profile_id
        self._escalator = escalator or EmergencyEscalator()
        self._connectivity = connectivity or ConnectivitySignal()
        self._dispatcher = dispatcher
        self._sinks: list[EmitFn] = [emit] if emit else []

        self._machine = ConsultationStateMachine()
        self._context = ConversationContext()
        self._result: AnalysisResult | None = None
        self._initial_symptoms = ""
        self._initial_image: bytes | None = None
        self._follow_up_rounds = 0
        self._in_flight = False
        self._pending_escalation: asyncio.Task[None] | None = None
        self._location_hint: str | None = None

    @property
    def state(self) -> ConsultationState:
        return self._machine.state

    @property
    def epoch(self) -> int:
        return self._machine.epoch

    @property
    def current_result(self) -> AnalysisResult | None:
        return self._result

    @property
    def location_hint(self) -> str | None:
        return self._location_hint

    def set_location_hint(self, location_hint: str | None) -> None:
        """Coarse place name used for nearby-help intents; blank clears it."""
        self._location_hint = (location_hint or "").strip() or None

    @property
    def context_text(self) -> str:
        return self._context.render()

    @property
    def has_pending_escalation(self) -> bool:
        return self._pending_escalation is not None and not self._pending_escalation.done()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self._machine.subscribe(listener)

    def add_sink(self, sink: EmitFn) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EmitFn) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    async def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        envelope = {"profile_id": self._profile_id, "epoch": self._machine.epoch, **payload}
        for sink in list(self._sinks):
            await sink(event_name, envelope)

    async def _transition(self, target: ConsultationState) -> None:
        change = self._machine.transition(target)
        await self._emit(
            "consultation.state",
            {"previous": change.previous.value, "state": change.current.value},
        )

    def _validate(self, text: str, image: bytes | None, is_follow_up: bool) -> None:
        if not text and not image:
            raise InvalidSubmissionError("Describe the symptoms or attach a photo.")
        if image is not None and len(image) > self._settings.max_image_bytes:
            raise InvalidSubmissionError(
                f"Image is {len(image)} bytes; the limit is {self._settings.max_image_bytes}."
            )
        if is_follow_up and self._machine.state is not ConsultationState.FOLLOW_UP_PENDING:
            raise InvalidSubmissionError("No follow-up question is pending for this consultation.")

    async def _resolve_profile(self) -> PatientProfile | None:
        if self._profile_id:
            return await self._profiles.get(self._profile_id)
        return await self._profiles.get_active()

    async def _call_oracle(
        self,
        text: str,
        image: bytes | None,
        language: str,
        profile: PatientProfile | None,
    ) -> AnalysisResult:
        started = now_ms()
        try:
            return await asyncio.wait_for(
                self._analysis.analyze(text, image, language, self._context.render(), profile),
                timeout=self._settings.oracle_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("oracle_timeout: after %sms", elapsed_ms(started))
            reason = "timeout"
        except Exception as exc:
            logger.warning("oracle_fallback: %s: %s", type(exc).__name__, exc)
            reason = type(exc).__name__
        await self._emit("oracle.fallback", {"reason": reason})
        return fallback_analysis_result(language)

    async def submit(
        self,
        input_text: str,
        image: bytes | None = None,
        *,
        is_follow_up: bool = False,
        language: str | None = None,
    ) -> SubmitOutcome:
        if self._in_flight or self._machine.state is ConsultationState.AWAITING_ORACLE:
            raise ConsultationBusyError("A consultation turn is already in progress.")

        if not self._connectivity.is_online():
            self._result = None
            await self._transition(ConsultationState.OFFLINE_REDIRECT)
            return SubmitOutcome(state=self._machine.state, epoch=self._machine.epoch)

        text = (input_text or "").strip()
        self._validate(text, image, is_follow_up)
        language = language or self._settings.default_language

        epoch = self._machine.epoch
        self._in_flight = True
        try:
            profile = await self._resolve_profile()
            if epoch != self._machine.epoch:
                return await self._discard_stale(epoch)

            if is_follow_up:
                self._follow_up_rounds += 1
                self._context.add_user_answer(text)
            else:
                self._context.start()
                self._initial_symptoms = text
                self._initial_image = image
                self._follow_up_rounds = 0
            self._result = None
            await self._transition(ConsultationState.AWAITING_ORACLE)

            result = await self._call_oracle(text, image, language, profile)
            if epoch != self._machine.epoch:
                return await self._discard_stale(epoch)

            self._context.add_oracle_response(result)
            self._result = result
            return await self._decide(text, image, is_follow_up, result, profile, language)
        finally:
            if epoch == self._machine.epoch:
                self._in_flight = False

    async def _discard_stale(self, epoch: int) -> SubmitOutcome:
        logger.info("stale_response_discarded: epoch=%s current=%s", epoch, self._machine.epoch)
        await self._emit("oracle.stale_response", {"stale_epoch": epoch})
        return SubmitOutcome(state=self._machine.state, epoch=self._machine.epoch, stale=True)

    async def _decide(
        self,
        text: str,
        image: bytes | None,
        is_follow_up: bool,
        result: AnalysisResult,
        profile: PatientProfile | None,
        language: str,
    ) -> SubmitOutcome:
        if result.is_emergency:
            # Emergencies are recorded against the symptoms that opened the consultation.
            symptoms = self._initial_symptoms or text
            await self._transition(ConsultationState.FINALIZED)
            escalation = self._escalator.build(
                profile,
                result,
                symptoms=symptoms,
                location_hint=self.location_hint,
                language=language,
            )
            self._schedule_escalation(escalation)
            await self._emit("escalation.requested", {"escalation": escalation.model_dump(mode="json")})
            image_for_record = self._initial_image
            self._finish_conversation()
            record = await self._append_record(symptoms, result, profile, image_for_record)
            return SubmitOutcome(
                state=self._machine.state,
                epoch=self._machine.epoch,
                result=result,
                record=record,
                escalation=escalation,
                nearby_help=escalation.nearby_help,
            )

        can_ask = self._follow_up_rounds < self._settings.max_follow_up_rounds
        if result.needs_follow_up and can_ask:
            await self._transition(ConsultationState.FOLLOW_UP_PENDING)
            await self._emit("follow_up.requested", {"questions": list(result.follow_up_questions)})
            return SubmitOutcome(
                state=self._machine.state,
                epoch=self._machine.epoch,
                result=result,
                follow_up_questions=list(result.follow_up_questions),
            )

        await self._transition(ConsultationState.FINALIZED)
        self._finish_conversation()
        record = None
        if not is_follow_up and not result.needs_follow_up:
            record = await self._append_record(text, result, profile, image)
        return SubmitOutcome(
            state=self._machine.state,
            epoch=self._machine.epoch,
            result=result,
            record=record,
            nearby_help=self._escalator.nearby_help(result, self.location_hint),
        )

    def _finish_conversation(self) -> None:
        self._context.clear()
        self._initial_symptoms = ""
        self._initial_image = None
        self._follow_up_rounds = 0

    async def _append_record(
        self,
        symptoms: str,
        result: AnalysisResult,
        profile: PatientProfile | None,
        image: bytes | None,
    ) -> ConsultationRecord:
        timestamp = next_timestamp_ms()
        image_preview = None
        if image:
            image_preview = await self._history.store_image(f"{timestamp}.jpg", image)
        record = ConsultationRecord(
            id=str(timestamp),
            profile_id=profile.id if profile else self._profile_id,
            date=display_date(),
            timestamp=timestamp,
            symptoms=symptoms,
            diagnosis=result,
            image_preview=image_preview,
        )
        await self._history.append(record)
        await self._emit("record.created", {"record_id": record.id})
        return record

    def _schedule_escalation(self, payload: EscalationPayload) -> None:
        self._cancel_pending_escalation()
        self._pending_escalation = asyncio.create_task(self._dispatch_later(payload))

    async def _dispatch_later(self, payload: EscalationPayload) -> None:
        await asyncio.sleep(self._settings.escalation_delay_sec)
        await self._emit("escalation.dispatch", {"escalation": payload.model_dump(mode="json")})
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher(payload)
        except Exception as exc:
            logger.error("escalation_dispatch_failed: %s: %s", type(exc).__name__, exc)

    def _cancel_pending_escalation(self) -> bool:
        task = self._pending_escalation
        self._pending_escalation = None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def reset(self) -> None:
        cancelled = self._cancel_pending_escalation()
        self._finish_conversation()
        self._result = None
        self._in_flight = False
        change = self._machine.reset()
        if cancelled:
            logger.info("escalation_cancelled: profile=%s", self._profile_id)
            await self._emit("escalation.cancelled", {})
        await self._emit("consultation.state", {"previous": change.previous.value, "state": change.current.value})


class ConsultationSessions:
    """One independent orchestrator per profile id."""

    def __init__(self, build: Callable[[str], ConsultationOrchestrator]):
        self._build = build
        self._sessions: dict[str, ConsultationOrchestrator] = {}
        self._location_hint: str | None = None

    def get(self, profile_id: str) -> ConsultationOrchestrator:
        orchestrator = self._sessions.get(profile_id)
        if orchestrator is None:
            orchestrator = self._build(profile_id)
            orchestrator.set_location_hint(self._location_hint)
            self._sessions[profile_id] = orchestrator
        return orchestrator

    def __contains__(self, profile_id: object) -> bool:
        return profile_id in self._sessions

    @property
    def location_hint(self) -> str | None:
        return self._location_hint

    def set_location_hint(self, location_hint: str | None) -> None:
        self._location_hint = (location_hint or "").strip() or None
        for orchestrator in self._sessions.values():
            orchestrator.set_location_hint(self._location_hint)

"""Consultation history and patient profiles on top of a key-value store."""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from ruraldoc.errors import DuplicateProfileError, PersistenceError, ProfileNotFoundError
from ruraldoc.schemas import DEMO_PROFILE, ConsultationRecord, PatientProfile
from ruraldoc.storage import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "history"
PROFILES_KEY = "profiles"
ACTIVE_PROFILE_KEY = "active_profile_id"


class HistoryStore:
    def __init__(self, store: KeyValueStore):
        self._store = store
        self._lock = asyncio.Lock()

    async def _load(self) -> list[ConsultationRecord]:
        raw = await self._store.get_json(HISTORY_KEY)
        if raw is None:
            return []
        try:
            return [ConsultationRecord.model_validate(item) for item in raw]
        except (TypeError, ValidationError) as exc:
            raise PersistenceError("Stored consultation history is corrupt") from exc

    async def append(self, record: ConsultationRecord) -> None:
        async with self._lock:
            records = await self._load()
            records.insert(0, record)
            await self._store.put_json(HISTORY_KEY, [r.model_dump(mode="json") for r in records])
        logger.info("history_appended: id=%s profile=%s", record.id, record.profile_id)

    async def list(self, profile_id: str | None = None) -> list[ConsultationRecord]:
        records = await self._load()
        if profile_id is not None:
            records = [r for r in records if r.profile_id == profile_id]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    async def store_image(self, name: str, data: bytes) -> str:
        return await self._store.put_blob(name, data, content_type="image/jpeg")


class ProfileStore:
    def __init__(self, store: KeyValueStore):
        self._store = store
        self._lock = asyncio.Lock()

    async def _load(self) -> list[PatientProfile]:
        raw = await self._store.get_json(PROFILES_KEY)
        if not raw:
            return []
        try:
            return [PatientProfile.model_validate(item) for item in raw]
        except (TypeError, ValidationError) as exc:
            raise PersistenceError("Stored profiles are corrupt") from exc

    async def _save(self, profiles: list[PatientProfile]) -> None:
        await self._store.put_json(PROFILES_KEY, [p.model_dump(mode="json") for p in profiles])

    async def _ensure_seeded(self) -> list[PatientProfile]:
        profiles = await self._load()
        if profiles:
            return profiles
        logger.info("profile_store_seeded: id=%s", DEMO_PROFILE.id)
        await self._save([DEMO_PROFILE])
        await self._store.put_json(ACTIVE_PROFILE_KEY, DEMO_PROFILE.id)
        return [DEMO_PROFILE]

    async def list(self) -> list[PatientProfile]:
        async with self._lock:
            return await self._ensure_seeded()

    async def get(self, profile_id: str) -> PatientProfile:
        for profile in await self.list():
            if profile.id == profile_id:
                return profile
        raise ProfileNotFoundError(profile_id)

    async def create(self, profile: PatientProfile) -> PatientProfile:
        async with self._lock:
            profiles = await self._ensure_seeded()
            if any(p.id == profile.id for p in profiles):
                raise DuplicateProfileError(f"Profile id already exists: {profile.id}")
            profiles.append(profile)
            await self._save(profiles)
            await self._store.put_json(ACTIVE_PROFILE_KEY, profile.id)
        logger.info("profile_created: id=%s", profile.id)
        return profile

    async def get_active(self) -> PatientProfile | None:
        profiles = await self.list()
        active_id = await self._store.get_json(ACTIVE_PROFILE_KEY)
        for profile in profiles:
            if profile.id == active_id:
                return profile
        return profiles[0] if profiles else None

    async def set_active(self, profile_id: str) -> PatientProfile:
        profile = await self.get(profile_id)
        await self._store.put_json(ACTIVE_PROFILE_KEY, profile.id)
        return profile

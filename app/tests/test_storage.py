import asyncio
import io
from pathlib import Path

import pytest
from botocore.exceptions import ClientError
from pydantic import ValidationError

from stubs import make_result, make_settings
from ruraldoc.errors import DuplicateProfileError, PersistenceError, ProfileNotFoundError
from ruraldoc.history import HistoryStore, ProfileStore
from ruraldoc.schemas import ConsultationRecord, PatientProfile
from ruraldoc.storage import LocalJsonStore, S3KeyValueStore, build_store


class FakeS3Client:
    def __init__(self, fail_code: str | None = None):
        self.objects: dict[tuple[str, str], bytes] = {}
        self._fail_code = fail_code

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        if self._fail_code:
            raise ClientError({"Error": {"Code": self._fail_code}}, "GetObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


def _record(timestamp: int, profile_id: str) -> ConsultationRecord:
    return ConsultationRecord(
        id=str(timestamp),
        profile_id=profile_id,
        date="2026-10-18",
        timestamp=timestamp,
        symptoms="cough",
        diagnosis=make_result(),
    )


def test_history_lists_newest_first_and_filters_by_profile(tmp_path: Path):
    history = HistoryStore(LocalJsonStore(tmp_path))

    async def scenario():
        for ts, profile_id in [(200, "a"), (100, "b"), (300, "a"), (50, "a")]:
            await history.append(_record(ts, profile_id))
        return await history.list(), await history.list("a")

    everything, only_a = asyncio.run(scenario())

    assert [r.timestamp for r in everything] == [300, 200, 100, 50]
    assert [r.timestamp for r in only_a] == [300, 200, 50]
    assert only_a[0].diagnosis.risk_level == "LOW"


def test_history_survives_a_new_store_instance(tmp_path: Path):
    asyncio.run(HistoryStore(LocalJsonStore(tmp_path)).append(_record(100, "a")))

    records = asyncio.run(HistoryStore(LocalJsonStore(tmp_path)).list("a"))

    assert [r.id for r in records] == ["100"]


def test_profile_store_seeds_demo_profile(tmp_path: Path):
    profiles = ProfileStore(LocalJsonStore(tmp_path))

    async def scenario():
        return await profiles.list(), await profiles.get_active()

    listed, active = asyncio.run(scenario())

    assert [p.id for p in listed] == ["demo_1"]
    assert active.name == "Demo Patient"
    assert active.emergency_contact_number == "9999999999"


def test_created_profile_becomes_active(tmp_path: Path):
    profiles = ProfileStore(LocalJsonStore(tmp_path))
    asha = PatientProfile(name="Asha", age=34, emergency_contact_number="+91 98200 00000")

    async def scenario():
        await profiles.create(asha)
        active = await profiles.get_active()
        await profiles.set_active("demo_1")
        return active, await profiles.get_active(), await profiles.list()

    active, switched, listed = asyncio.run(scenario())

    assert active.id == asha.id
    assert switched.id == "demo_1"
    assert [p.name for p in listed] == ["Demo Patient", "Asha"]


def test_duplicate_and_unknown_profiles_are_rejected(tmp_path: Path):
    profiles = ProfileStore(LocalJsonStore(tmp_path))
    clash = PatientProfile(id="demo_1", name="Clash", age=3, emergency_contact_number="1")

    with pytest.raises(DuplicateProfileError):
        asyncio.run(profiles.create(clash))
    with pytest.raises(ProfileNotFoundError):
        asyncio.run(profiles.set_active("nobody"))


@pytest.mark.parametrize(
    "fields",
    [
        {"name": "", "age": 30, "emergency_contact_number": "1"},
        {"name": "Ravi", "age": -1, "emergency_contact_number": "1"},
        {"name": "Ravi", "age": 30, "emergency_contact_number": "  "},
    ],
)
def test_profile_requires_name_age_and_contact(fields):
    with pytest.raises(ValidationError):
        PatientProfile(**fields)


def test_corrupt_local_file_raises_persistence_error(tmp_path: Path):
    (tmp_path / "kv").mkdir()
    (tmp_path / "kv" / "history.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        asyncio.run(HistoryStore(LocalJsonStore(tmp_path)).list())


def test_unwritable_local_store_raises_persistence_error(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be", encoding="utf-8")

    with pytest.raises(PersistenceError):
        asyncio.run(LocalJsonStore(blocker).put_json("history", []))


def test_s3_store_round_trip_and_missing_key():
    client = FakeS3Client()
    store = S3KeyValueStore("bucket", prefix="/ruraldoc/", client=client)

    async def scenario():
        missing = await store.get_json("profiles")
        await store.put_json("profiles", [{"id": "x"}])
        uri = await store.put_blob("1.jpg", b"img", content_type="image/jpeg")
        return missing, await store.get_json("profiles"), uri

    missing, loaded, uri = asyncio.run(scenario())

    assert missing is None
    assert loaded == [{"id": "x"}]
    assert uri == "s3://bucket/ruraldoc/blobs/1.jpg"
    assert ("bucket", "ruraldoc/kv/profiles.json") in client.objects


def test_s3_access_denied_raises_persistence_error():
    store = S3KeyValueStore("bucket", client=FakeS3Client(fail_code="AccessDenied"))

    with pytest.raises(PersistenceError):
        asyncio.run(store.get_json("history"))


def test_build_store_defaults_to_local(tmp_path: Path):
    assert isinstance(build_store(make_settings(tmp_path)), LocalJsonStore)

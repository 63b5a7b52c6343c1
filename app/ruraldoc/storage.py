"""Key-value persistence for RuralDoc.

The local filesystem store is the default and is what tests use. When an S3 bucket
is configured the same contract is served from S3 instead.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from ruraldoc.config import Settings
from ruraldoc.errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get_json(self, key: str) -> Any | None: ...

    async def put_json(self, key: str, value: Any) -> None: ...

    async def put_blob(self, name: str, data: bytes, *, content_type: str) -> str: ...


def _dumps(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str).encode("utf-8")


class LocalJsonStore:
    def __init__(self, root: str | Path):
        self._root = Path(root)

    def _key_path(self, key: str) -> Path:
        return self._root / "kv" / f"{key}.json"

    async def get_json(self, key: str) -> Any | None:
        path = self._key_path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("local_store_read_failed: key=%s %s: %s", key, type(exc).__name__, exc)
            raise PersistenceError(f"Could not read '{key}' from {path}") from exc

    async def put_json(self, key: str, value: Any) -> None:
        path = self._key_path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(_dumps(value))
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("local_store_write_failed: key=%s %s: %s", key, type(exc).__name__, exc)
            raise PersistenceError(f"Could not write '{key}' to {path}") from exc

    async def put_blob(self, name: str, data: bytes, *, content_type: str) -> str:
        path = self._root / "blobs" / name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            logger.error("local_store_blob_failed: name=%s %s: %s", name, type(exc).__name__, exc)
            raise PersistenceError(f"Could not write blob '{name}'") from exc
        return str(path)


class S3KeyValueStore:
    def __init__(self, bucket: str, *, prefix: str = "", region: str = "us-east-1", client: Any = None):
        if client is None:
            import boto3  # type: ignore

            client = boto3.client("s3", region_name=region)
        self._s3 = client
        self._bucket = bucket
        self._prefix = prefix.strip("/")

    def _s3_key(self, name: str) -> str:
        return f"{self._prefix}/{name}" if self._prefix else name

    async def get_json(self, key: str) -> Any | None:
        s3_key = self._s3_key(f"kv/{key}.json")
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=s3_key)
            raw = response["Body"].read()
        except ClientError as exc:
            code = str((exc.response.get("Error") or {}).get("Code", ""))
            if code in {"NoSuchKey", "404"}:
                return None
            logger.error("s3_store_read_failed: key=%s code=%s", s3_key, code)
            raise PersistenceError(f"Could not read s3://{self._bucket}/{s3_key}") from exc
        except BotoCoreError as exc:
            logger.error("s3_store_read_failed: key=%s %s", s3_key, exc)
            raise PersistenceError(f"Could not read s3://{self._bucket}/{s3_key}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt JSON at s3://{self._bucket}/{s3_key}") from exc

    async def _put(self, s3_key: str, body: bytes, content_type: str) -> str:
        try:
            self._s3.put_object(Bucket=self._bucket, Key=s3_key, Body=body, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            logger.error("s3_store_write_failed: key=%s %s", s3_key, exc)
            raise PersistenceError(f"Could not write s3://{self._bucket}/{s3_key}") from exc
        return f"s3://{self._bucket}/{s3_key}"

    async def put_json(self, key: str, value: Any) -> None:
        await self._put(self._s3_key(f"kv/{key}.json"), _dumps(value), "application/json")

    async def put_blob(self, name: str, data: bytes, *, content_type: str) -> str:
        return await self._put(self._s3_key(f"blobs/{name}"), data, content_type)


def build_store(settings: Settings) -> KeyValueStore:
    if settings.s3_bucket:
        return S3KeyValueStore(settings.s3_bucket, prefix=settings.s3_prefix, region=settings.s3_region)
    return LocalJsonStore(settings.local_storage_dir)

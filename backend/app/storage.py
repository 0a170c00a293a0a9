from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import re
import threading
from typing import Any, Iterator, Protocol
from urllib.parse import quote, unquote

from pydantic import ValidationError

from app.config import Settings
from app.records import GrantAnalysis, serialize_analysis

logger = logging.getLogger("grantdesk.storage")


class StorageError(RuntimeError):
    """Raised when analysis storage read/write fails."""

    user_message = "Erreur de stockage."


class StorageUnavailableError(StorageError):
    user_message = "Le stockage est momentanément indisponible."


class AnalysisNotFoundError(StorageError):
    user_message = "Analyse non trouvée"


class KeyValueStore(Protocol):
    backend: str

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        """Return one page of keys starting with match_prefix and the next cursor (None once exhausted)."""
        ...

    def ping(self) -> None:
        ...


def _normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"local", "filesystem", "fs"}:
        return "local"
    if normalized in {"memory", "redis", "s3"}:
        return normalized
    if normalized in {"none", "disabled", "off"}:
        return "none"
    raise StorageError(f"Unsupported KV_BACKEND '{value}'. Use 'memory', 'local', 'redis', 's3' or 'none'.")


def _offset_page(keys: list[str], cursor: str | None, count: int) -> tuple[str | None, list[str]]:
    start = int(cursor or 0)
    end = start + max(1, count)
    next_cursor = str(end) if end < len(keys) else None
    return next_cursor, keys[start:end]


class MemoryKeyValueStore:
    backend = "memory"

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        with self._lock:
            keys = sorted(key for key in self._items if key.startswith(match_prefix))
        return _offset_page(keys, cursor, count)

    def ping(self) -> None:
        return None


class LocalKeyValueStore:
    """One JSON file per key under a directory; file names are the URL-quoted key."""

    backend = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        return self._root / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        destination = self._path(key)
        staging = destination.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
        staging.write_text(value, encoding="utf-8")
        os.replace(staging, destination)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        if not self._root.exists():
            return None, []
        keys = sorted(
            unquote(path.name[: -len(".json")])
            for path in self._root.glob("*.json")
        )
        return _offset_page([key for key in keys if key.startswith(match_prefix)], cursor, count)

    def ping(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        if not os.access(self._root, os.W_OK):
            raise StorageUnavailableError(f"Storage root '{self._root}' is not writable.")


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisKeyValueStore:
    backend = "redis"

    def __init__(self, url: str, client: Any | None = None) -> None:
        if client is None:
            import redis

            client = redis.Redis.from_url(url, decode_responses=True)
        self._client = client

    def get(self, key: str) -> str | None:
        value = self._client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        self._client.set(key, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", match_prefix) + "*"
        next_cursor, keys = self._client.scan(cursor=int(cursor or 0), match=pattern, count=count)
        decoded = [key.decode("utf-8") if isinstance(key, bytes) else str(key) for key in keys]
        # Redis signals exhaustion by returning cursor 0.
        return (None if int(next_cursor) == 0 else str(next_cursor)), decoded

    def ping(self) -> None:
        self._client.ping()


class S3KeyValueStore:
    backend = "s3"

    def __init__(self, *, bucket: str, prefix: str, region: str, client: Any | None = None) -> None:
        if not bucket.strip():
            raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")
        self._bucket = bucket.strip()
        cleaned = prefix.strip().strip("/")
        self._base = f"{cleaned}/kv/" if cleaned else "kv/"
        if client is None:
            import boto3  # type: ignore

            client = boto3.client("s3", region_name=region)
        self._client = client

    def _object_key(self, key: str) -> str:
        return f"{self._base}{key}"

    def get(self, key: str) -> str | None:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise
        body = response.get("Body")
        if body is None:
            raise StorageError(f"S3 get_object returned no body (bucket={self._bucket}, key={key}).")
        return body.read().decode("utf-8")

    def set(self, key: str, value: str) -> None:
        self._client.put_object(
            Bucket=self._bucket,
            Key=self._object_key(key),
            Body=value.encode("utf-8"),
            ContentType="application/json",
        )

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=self._object_key(key))

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        request: dict[str, Any] = {
            "Bucket": self._bucket,
            "Prefix": self._object_key(match_prefix),
            "MaxKeys": count,
        }
        if cursor:
            request["ContinuationToken"] = cursor
        response = self._client.list_objects_v2(**request)
        keys = [str(item["Key"])[len(self._base) :] for item in response.get("Contents", [])]
        next_cursor = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return next_cursor, keys

    def ping(self) -> None:
        self._client.head_bucket(Bucket=self._bucket)


class DisabledKeyValueStore:
    backend = "none"

    def _fail(self) -> None:
        raise StorageUnavailableError("Aucun stockage n'est configuré (KV_BACKEND=none).")

    def get(self, key: str) -> str | None:
        self._fail()

    def set(self, key: str, value: str) -> None:
        self._fail()

    def delete(self, key: str) -> None:
        self._fail()

    def scan(self, cursor: str | None, *, match_prefix: str, count: int) -> tuple[str | None, list[str]]:
        self._fail()

    def ping(self) -> None:
        self._fail()


def create_key_value_store(settings: Settings) -> KeyValueStore:
    backend = _normalize_backend(settings.kv_backend)
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "local":
        return LocalKeyValueStore(settings.storage_root)
    if backend == "redis":
        return RedisKeyValueStore(settings.redis_url)
    if backend == "s3":
        return S3KeyValueStore(bucket=settings.s3_bucket, prefix=settings.s3_prefix, region=settings.aws_region)
    return DisabledKeyValueStore()


def _upload_sort_key(record: GrantAnalysis) -> tuple[datetime, str]:
    try:
        parsed = datetime.fromisoformat(record.upload_date.replace("Z", "+00:00"))
    except ValueError:
        parsed = datetime.min
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, record.id


class AnalysisRepository:
    """CRUD over GrantAnalysis records stored as JSON under `prefix + id`."""

    def __init__(self, store: KeyValueStore, *, prefix: str = "grant:analysis:", scan_count: int = 100) -> None:
        self._store = store
        self._prefix = prefix
        self._scan_count = max(1, scan_count)

    @property
    def backend(self) -> str:
        return self._store.backend

    def key_for(self, analysis_id: str) -> str:
        return f"{self._prefix}{analysis_id}"

    @contextmanager
    def _store_call(self, operation: str, **details: object) -> Iterator[None]:
        try:
            yield
        except StorageError:
            raise
        except Exception as exc:
            logger.warning(
                "storage_call_failed",
                extra={
                    "event": "storage_call_failed",
                    "operation": operation,
                    "backend": self.backend,
                    "error": str(exc),
                    **details,
                },
            )
            raise StorageUnavailableError(f"Storage {operation} failed ({self.backend}): {exc}") from exc

    def _decode(self, key: str, raw: str) -> GrantAnalysis:
        try:
            return GrantAnalysis.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageUnavailableError(f"Stored value at '{key}' is not a valid analysis record: {exc}") from exc

    def put(self, record: GrantAnalysis) -> None:
        key = self.key_for(record.id)
        payload = json.dumps(serialize_analysis(record), ensure_ascii=False)
        with self._store_call("put", key=key):
            self._store.set(key, payload)

    def get(self, analysis_id: str) -> GrantAnalysis | None:
        key = self.key_for(analysis_id)
        with self._store_call("get", key=key):
            raw = self._store.get(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    def list_all(self) -> list[GrantAnalysis]:
        keys: list[str] = []
        seen: set[str] = set()
        cursor: str | None = None
        with self._store_call("scan", prefix=self._prefix):
            while True:
                cursor, page = self._store.scan(cursor, match_prefix=self._prefix, count=self._scan_count)
                for key in page:
                    # Redis SCAN may return a key more than once.
                    if key not in seen:
                        seen.add(key)
                        keys.append(key)
                if cursor is None:
                    break

        records: list[GrantAnalysis] = []
        for key in keys:
            with self._store_call("get", key=key):
                raw = self._store.get(key)
            if raw is None:
                continue
            try:
                records.append(self._decode(key, raw))
            except StorageUnavailableError as exc:
                # Listing stays available when one value under the prefix is unreadable.
                logger.warning(
                    "storage_record_skipped",
                    extra={"event": "storage_record_skipped", "backend": self.backend, "key": key, "error": str(exc)},
                )

        records.sort(key=_upload_sort_key, reverse=True)
        return records

    def delete(self, analysis_id: str) -> None:
        key = self.key_for(analysis_id)
        with self._store_call("delete", key=key):
            self._store.delete(key)

    def update_notes(self, analysis_id: str, notes: str | None) -> GrantAnalysis:
        record = self.get(analysis_id)
        if record is None:
            raise AnalysisNotFoundError(f"Analysis '{analysis_id}' not found.")
        updated = record.model_copy(update={"personal_notes": notes})
        self.put(updated)
        return updated

    def ping(self) -> None:
        with self._store_call("ping"):
            self._store.ping()

"""Persistence backends for the asset cache."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from studio_core.config import Settings

logger = logging.getLogger(__name__)

FILE_STORE_VERSION = 1

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS asset_cache_entries (
    fingerprint TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    stored_at DOUBLE PRECISION NOT NULL,
    approx_byte_size BIGINT NOT NULL
)
"""

CREATE_STORED_AT_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_asset_cache_entries_stored_at
ON asset_cache_entries (stored_at)
"""

UPSERT_ENTRY_SQL = """
INSERT INTO asset_cache_entries (fingerprint, payload, stored_at, approx_byte_size)
VALUES (%(fingerprint)s, %(payload)s, %(stored_at)s, %(approx_byte_size)s)
ON CONFLICT (fingerprint)
DO UPDATE SET payload = EXCLUDED.payload,
              stored_at = EXCLUDED.stored_at,
              approx_byte_size = EXCLUDED.approx_byte_size
"""

GET_ENTRY_SQL = """
SELECT fingerprint, payload, stored_at, approx_byte_size
FROM asset_cache_entries
WHERE fingerprint = %(fingerprint)s
LIMIT 1
"""

LIST_ENTRIES_SQL = """
SELECT fingerprint, payload, stored_at, approx_byte_size
FROM asset_cache_entries
ORDER BY stored_at ASC
"""

TOUCH_ENTRY_SQL = """
UPDATE asset_cache_entries
SET stored_at = %(stored_at)s
WHERE fingerprint = %(fingerprint)s
"""

DELETE_ENTRY_SQL = """
DELETE FROM asset_cache_entries
WHERE fingerprint = %(fingerprint)s
"""

CLEAR_ENTRIES_SQL = "DELETE FROM asset_cache_entries"


class AssetStoreError(RuntimeError):
    """Base exception for asset storage failures."""


class AssetStoreConfigError(AssetStoreError):
    """Raised when asset storage configuration is missing or invalid."""


class AssetStoreQuotaError(AssetStoreError):
    """Raised when a write would exceed the storage medium's quota."""


@dataclass(slots=True)
class AssetRecord:
    """One cached asset keyed by its request fingerprint."""

    fingerprint: str
    payload: str
    stored_at: float
    approx_byte_size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "AssetRecord":
        return cls(
            fingerprint=str(row["fingerprint"]),
            payload=str(row["payload"]),
            stored_at=float(row["stored_at"]),
            approx_byte_size=int(row["approx_byte_size"]),
        )


class AssetStore(Protocol):
    """Key-value persistence medium used by ``AssetCache``."""

    async def open(self) -> None:
        """Prepare the medium (create schema, directories)."""

    async def close(self) -> None:
        """Release any held resources."""

    async def get(self, fingerprint: str) -> AssetRecord | None:
        """Return the record for a fingerprint, or None."""

    async def put(self, record: AssetRecord) -> None:
        """Insert or replace a record."""

    async def touch(self, fingerprint: str, stored_at: float) -> None:
        """Set the recency stamp of an existing record; missing keys are a no-op."""

    async def get_all(self) -> list[AssetRecord]:
        """Return every stored record."""

    async def delete(self, fingerprint: str) -> None:
        """Delete a record; deleting a missing key is a no-op."""

    async def clear(self) -> None:
        """Delete every record."""


class InMemoryAssetStore:
    """Dict-backed store used in tests and as the default backend."""

    def __init__(self) -> None:
        self._records: dict[str, AssetRecord] = {}

    async def open(self) -> None:
        return

    async def close(self) -> None:
        return

    async def get(self, fingerprint: str) -> AssetRecord | None:
        record = self._records.get(fingerprint)
        return replace(record) if record is not None else None

    async def put(self, record: AssetRecord) -> None:
        self._records[record.fingerprint] = replace(record)

    async def touch(self, fingerprint: str, stored_at: float) -> None:
        record = self._records.get(fingerprint)
        if record is not None:
            record.stored_at = stored_at

    async def get_all(self) -> list[AssetRecord]:
        return [replace(record) for record in self._records.values()]

    async def delete(self, fingerprint: str) -> None:
        self._records.pop(fingerprint, None)

    async def clear(self) -> None:
        self._records.clear()


class JsonFileAssetStore:
    """Single-document JSON file store with a hard size quota.

    Every write re-serializes the whole document. A ``put`` that would grow the
    file past ``quota_bytes`` drops the oldest other records until it fits; a
    record too large to fit on its own raises ``AssetStoreQuotaError`` and the
    previous document is kept.
    """

    def __init__(self, path: str | Path, *, quota_bytes: int) -> None:
        if quota_bytes <= 0:
            raise AssetStoreConfigError("ASSET_CACHE_FILE_QUOTA_BYTES must be greater than zero")
        self._path = Path(path)
        self._quota_bytes = quota_bytes
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        try:
            await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise AssetStoreError(f"Unable to prepare cache directory '{self._path.parent}'") from exc

    async def close(self) -> None:
        return

    def _read_records(self) -> dict[str, AssetRecord]:
        if not self._path.is_file():
            return {}
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
            entries = document.get("entries", []) if isinstance(document, dict) else []
            records = [AssetRecord.from_dict(entry) for entry in entries]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("asset_store.file_unreadable path=%s error=%s", self._path, exc)
            return {}
        return {record.fingerprint: record for record in records}

    def _write_records(self, records: dict[str, AssetRecord]) -> None:
        document = {
            "version": FILE_STORE_VERSION,
            "entries": [record.to_dict() for record in records.values()],
        }
        encoded = json.dumps(document, separators=(",", ":")).encode("utf-8")
        if len(encoded) > self._quota_bytes:
            raise AssetStoreQuotaError(
                f"Cache document of {len(encoded)} bytes exceeds quota of {self._quota_bytes} bytes"
            )
        temp_path: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                delete=False,
            ) as handle:
                temp_path = handle.name
                handle.write(encoded)
            os.replace(temp_path, self._path)
            temp_path = None
        except OSError as exc:
            raise AssetStoreError(f"Failed to write cache file '{self._path}'") from exc
        finally:
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    def _remove_file(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            raise AssetStoreError(f"Failed to remove cache file '{self._path}'") from exc

    async def get(self, fingerprint: str) -> AssetRecord | None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
        return records.get(fingerprint)

    def _write_within_quota(self, records: dict[str, AssetRecord], keep: str) -> None:
        """Write the document, dropping the oldest other records until it fits."""
        while True:
            try:
                self._write_records(records)
                return
            except AssetStoreQuotaError:
                candidates = [record for record in records.values() if record.fingerprint != keep]
                if not candidates:
                    raise
                oldest = min(candidates, key=lambda record: record.stored_at)
                del records[oldest.fingerprint]
                logger.info(
                    "asset_store.quota_evicted path=%s fingerprint=%s",
                    self._path,
                    oldest.fingerprint,
                )

    async def put(self, record: AssetRecord) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
            records[record.fingerprint] = replace(record)
            await asyncio.to_thread(self._write_within_quota, records, record.fingerprint)

    async def touch(self, fingerprint: str, stored_at: float) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
            record = records.get(fingerprint)
            if record is None:
                return
            record.stored_at = stored_at
            await asyncio.to_thread(self._write_records, records)

    async def get_all(self) -> list[AssetRecord]:
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
        return list(records.values())

    async def delete(self, fingerprint: str) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
            if records.pop(fingerprint, None) is None:
                return
            await asyncio.to_thread(self._write_records, records)

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove_file)


class PostgresAssetStore:
    """Postgres-backed store using async psycopg connections."""

    def __init__(self, *, dsn: str, connect_factory: Any | None = None) -> None:
        if not dsn and connect_factory is None:
            raise AssetStoreConfigError("Missing required asset cache configuration: ASSET_CACHE_DSN")
        self._dsn = dsn
        self._connect_factory = connect_factory

    async def _connect(self) -> Any:
        if self._connect_factory is not None:
            return await self._connect_factory()
        try:
            import psycopg
            from psycopg.rows import dict_row
        except Exception as exc:  # pragma: no cover - import availability varies by env
            raise AssetStoreConfigError(
                "psycopg is required for the postgres cache backend. Install psycopg[binary]."
            ) from exc
        return await psycopg.AsyncConnection.connect(self._dsn, row_factory=dict_row)

    async def _execute(
        self,
        statements: list[tuple[str, dict[str, Any] | None]],
        *,
        fetch: str | None = None,
    ) -> Any:
        try:
            async with await self._connect() as conn:
                result: Any = None
                async with conn.cursor() as cur:
                    for sql, params in statements:
                        await cur.execute(sql, params)
                    if fetch == "one":
                        result = await cur.fetchone()
                    elif fetch == "all":
                        result = await cur.fetchall()
                await conn.commit()
                return result
        except AssetStoreError:
            raise
        except Exception as exc:
            raise AssetStoreError("Postgres asset store operation failed") from exc

    async def open(self) -> None:
        await self.ensure_schema()

    async def close(self) -> None:
        return

    async def ensure_schema(self) -> None:
        await self._execute([(CREATE_TABLE_SQL, None), (CREATE_STORED_AT_INDEX_SQL, None)])

    async def get(self, fingerprint: str) -> AssetRecord | None:
        row = await self._execute([(GET_ENTRY_SQL, {"fingerprint": fingerprint})], fetch="one")
        return AssetRecord.from_dict(row) if row else None

    async def put(self, record: AssetRecord) -> None:
        await self._execute([(UPSERT_ENTRY_SQL, record.to_dict())])

    async def touch(self, fingerprint: str, stored_at: float) -> None:
        await self._execute([(TOUCH_ENTRY_SQL, {"fingerprint": fingerprint, "stored_at": stored_at})])

    async def get_all(self) -> list[AssetRecord]:
        rows = await self._execute([(LIST_ENTRIES_SQL, None)], fetch="all")
        return [AssetRecord.from_dict(row) for row in rows or []]

    async def delete(self, fingerprint: str) -> None:
        await self._execute([(DELETE_ENTRY_SQL, {"fingerprint": fingerprint})])

    async def clear(self) -> None:
        await self._execute([(CLEAR_ENTRIES_SQL, None)])


def build_asset_store(settings: "Settings") -> AssetStore:
    """Build the store selected by ``ASSET_CACHE_BACKEND``."""
    backend = settings.asset_cache_backend
    if backend == "file":
        return JsonFileAssetStore(
            settings.asset_cache_file,
            quota_bytes=settings.asset_cache_file_quota_bytes,
        )
    if backend == "postgres":
        return PostgresAssetStore(dsn=settings.asset_cache_dsn)
    return InMemoryAssetStore()

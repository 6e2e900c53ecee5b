"""Bounded LRU cache for generated image and video assets.

Entries are keyed by a deterministic fingerprint of the generation request
and bounded by both entry count and approximate byte size. The cache is an
optimization only: storage failures are logged and read as misses, and the
eviction sweep that follows every write runs as a detached task so writers
never wait on it.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from studio_core.asset_store import AssetRecord, AssetStore, build_asset_store
from studio_core.schemas import CacheStats

if TYPE_CHECKING:
    from studio_core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50
DEFAULT_MAX_TOTAL_BYTES = 10 * 1024 * 1024
FINGERPRINT_DELIMITER = "|"
# base64 carries 3 bytes of binary in every 4 characters of text
BASE64_DECODED_RATIO = 0.75
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def fingerprint(*parts: object) -> str:
    """Return a stable base-36 key for the ordered request parts.

    32-bit rolling hash (``h * 31 + unit``) over the UTF-16 code units of the
    parts joined with ``|``. Best-effort key, not collision resistant.
    """
    combined = FINGERPRINT_DELIMITER.join(str(part) for part in parts)
    encoded = combined.encode("utf-16-le")
    value = 0
    for index in range(0, len(encoded), 2):
        unit = encoded[index] | (encoded[index + 1] << 8)
        value = ((value << 5) - value + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def asset_fingerprint(prompt: str, style: str, resolution: str, aspect_ratio: str, seed: int) -> str:
    """Fingerprint for an image/video request in the conventional part order."""
    return fingerprint(prompt, style, resolution, aspect_ratio, str(seed))


def estimate_size(payload: str) -> int:
    """Approximate decoded byte size of a base64 text payload."""
    return int(len(payload) * BASE64_DECODED_RATIO)


def _wall_clock() -> float:
    """Epoch milliseconds."""
    return time.time() * 1000


class AssetCache:
    """LRU asset cache over an injected ``AssetStore``."""

    def __init__(
        self,
        store: AssetStore,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if max_total_bytes < 1:
            raise ValueError("max_total_bytes must be >= 1")
        self._store = store
        self._max_entries = max_entries
        self._max_total_bytes = max_total_bytes
        self._clock = clock or _wall_clock
        self._last_stamp = float("-inf")
        self._evict_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: "Settings", store: AssetStore | None = None) -> "AssetCache":
        return cls(
            store if store is not None else build_asset_store(settings),
            max_entries=settings.asset_cache_max_entries,
            max_total_bytes=settings.asset_cache_max_bytes,
        )

    @property
    def store(self) -> AssetStore:
        return self._store

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def max_total_bytes(self) -> int:
        return self._max_total_bytes

    async def open(self) -> None:
        try:
            await self._store.open()
        except Exception as exc:
            logger.warning("asset_cache.open_failed error=%s", exc)

    async def close(self) -> None:
        await self.drain()
        try:
            await self._store.close()
        except Exception as exc:
            logger.warning("asset_cache.close_failed error=%s", exc)

    async def __aenter__(self) -> "AssetCache":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _next_stamp(self) -> float:
        # Strictly increasing so recency order survives coarse clocks.
        stamp = self._clock()
        if stamp <= self._last_stamp:
            stamp = math.nextafter(self._last_stamp, math.inf)
        self._last_stamp = stamp
        return stamp

    async def get(self, fingerprint: str) -> str | None:
        """Return the cached payload and refresh its recency, or None on miss."""
        try:
            record = await self._store.get(fingerprint)
        except Exception as exc:
            logger.warning("asset_cache.get_failed fingerprint=%s error=%s", fingerprint, exc)
            return None
        if record is None:
            logger.info("asset_cache.miss fingerprint=%s", fingerprint)
            return None

        try:
            await self._store.touch(fingerprint, self._next_stamp())
        except Exception as exc:
            logger.warning("asset_cache.touch_failed fingerprint=%s error=%s", fingerprint, exc)
        logger.info("asset_cache.hit fingerprint=%s", fingerprint)
        return record.payload

    async def put(self, fingerprint: str, payload: str) -> None:
        """Store a payload, then schedule a background eviction sweep."""
        record = AssetRecord(
            fingerprint=fingerprint,
            payload=payload,
            stored_at=self._next_stamp(),
            approx_byte_size=estimate_size(payload),
        )
        try:
            await self._store.put(record)
        except Exception as exc:
            logger.warning("asset_cache.put_failed fingerprint=%s error=%s", fingerprint, exc)
            return
        logger.info(
            "asset_cache.stored fingerprint=%s size_kb=%.1f",
            fingerprint,
            record.approx_byte_size / 1024,
        )
        self._schedule_eviction()

    def _schedule_eviction(self) -> None:
        task = asyncio.create_task(self.evict())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight background eviction sweeps."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def evict(self) -> None:
        """Drop least recently used entries until both bounds hold."""
        async with self._evict_lock:
            try:
                records = await self._store.get_all()
            except Exception as exc:
                logger.warning("asset_cache.evict_failed stage=list error=%s", exc)
                return

            records.sort(key=lambda record: record.stored_at)
            victims: list[tuple[AssetRecord, str]] = []
            cursor = 0
            while len(records) - cursor > self._max_entries:
                victims.append((records[cursor], "count"))
                cursor += 1

            total_bytes = sum(record.approx_byte_size for record in records[cursor:])
            while total_bytes > self._max_total_bytes and cursor < len(records):
                victims.append((records[cursor], "size"))
                total_bytes -= records[cursor].approx_byte_size
                cursor += 1

            for record, reason in victims:
                try:
                    await self._store.delete(record.fingerprint)
                except Exception as exc:
                    logger.warning(
                        "asset_cache.evict_failed stage=delete fingerprint=%s error=%s",
                        record.fingerprint,
                        exc,
                    )
                    return
                logger.info(
                    "asset_cache.evicted reason=%s fingerprint=%s size_kb=%.1f",
                    reason,
                    record.fingerprint,
                    record.approx_byte_size / 1024,
                )

    async def clear(self) -> None:
        try:
            await self._store.clear()
        except Exception as exc:
            logger.warning("asset_cache.clear_failed error=%s", exc)
            return
        logger.info("asset_cache.cleared")

    async def stats(self) -> CacheStats:
        try:
            records = await self._store.get_all()
        except Exception as exc:
            logger.warning("asset_cache.stats_failed error=%s", exc)
            records = []
        return CacheStats(
            entry_count=len(records),
            total_bytes=sum(record.approx_byte_size for record in records),
            max_bytes=self._max_total_bytes,
            max_entries=self._max_entries,
        )

    async def get_or_generate(
        self,
        parts: Sequence[object],
        generate: Callable[[], Awaitable[str]],
    ) -> str:
        """Return the cached payload for ``parts`` or generate and store it."""
        key = fingerprint(*parts)
        cached = await self.get(key)
        if cached is not None:
            return cached
        payload = await generate()
        await self.put(key, payload)
        return payload

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Tuple

from nats.js.errors import (
    BadRequestError,
    BucketNotFoundError,
    KeyNotFoundError,
    KeyWrongLastSequenceError,
    NoKeysError,
)

from core.utils import escape_key_segment, unescape_key_segment

logger = logging.getLogger(__name__)


def kv_key(*segments: Any) -> str:
    """Join escaped segments into a dotted JetStream KV key; distinct segments never collide."""
    return ".".join(escape_key_segment(s) for s in segments)


def key_segments(key: str) -> List[str]:
    return [unescape_key_segment(s) for s in key.split(".")]


class BaseKvStore:
    """
    JSON documents in one JetStream KV bucket.

    Expiry is bucket-wide (`ttl_s`), so every key family with its own lifetime
    lives in its own bucket.
    """

    def __init__(
        self,
        nats_client: Any,
        *,
        bucket_name: str,
        ttl_s: Optional[int] = None,
        history: int = 1,
        payload_max_bytes: Optional[int] = None,
    ):
        self.nats = nats_client
        self.bucket_name = bucket_name
        self.ttl_s = ttl_s
        self.history = history
        self.payload_max_bytes = payload_max_bytes
        self.kv = None

    async def _ensure_kv(self):
        if self.kv:
            return self.kv
        if not self.nats.js:
            raise RuntimeError("NATS JetStream not connected")
        try:
            self.kv = await self.nats.js.key_value(self.bucket_name)
        except BucketNotFoundError:
            logger.info("Creating KV bucket bucket=%s ttl_s=%s", self.bucket_name, self.ttl_s)
            kwargs: dict = {"bucket": self.bucket_name, "history": self.history}
            if self.ttl_s:
                kwargs["ttl"] = int(self.ttl_s)
            self.kv = await self.nats.js.create_key_value(**kwargs)
        return self.kv

    async def ensure_bucket(self) -> None:
        await self._ensure_kv()

    def _encode(self, value: Any) -> bytes:
        raw = json.dumps(value, default=str).encode("utf-8")
        if self.payload_max_bytes is not None and len(raw) > self.payload_max_bytes:
            raise ValueError(f"payload size {len(raw)} exceeds limit {self.payload_max_bytes} bytes")
        return raw

    @staticmethod
    def _decode(raw: Optional[bytes]) -> Optional[Any]:
        if not raw:
            return None
        return json.loads(raw.decode("utf-8"))

    async def _get_entry(self, key: str) -> Optional[Tuple[Any, int]]:
        kv = await self._ensure_kv()
        try:
            entry = await kv.get(key)
        except KeyNotFoundError:
            return None
        if entry is None or not entry.value:
            return None
        return self._decode(entry.value), entry.revision

    async def _get_json(self, key: str) -> Optional[Any]:
        found = await self._get_entry(key)
        return found[0] if found else None

    async def _put_json(self, key: str, value: Any) -> int:
        kv = await self._ensure_kv()
        return await kv.put(key, self._encode(value))

    async def _create_json(self, key: str, value: Any) -> bool:
        """Write-once; False when the key already holds a live value."""
        kv = await self._ensure_kv()
        try:
            await kv.create(key, self._encode(value))
            return True
        except KeyWrongLastSequenceError:
            return False

    async def _delete(self, key: str, *, last: Optional[int] = None) -> bool:
        """Delete `key`; with `last`, only if it is still at that revision."""
        kv = await self._ensure_kv()
        try:
            if last is None:
                await kv.delete(key)
            else:
                await kv.delete(key, last=last)
            return True
        except (KeyWrongLastSequenceError, KeyNotFoundError, BadRequestError):
            # a stale `last` comes back as a wrong-last-sequence API error
            return False

    async def _keys(self) -> List[str]:
        kv = await self._ensure_kv()
        try:
            return list(await kv.keys())
        except NoKeysError:
            return []

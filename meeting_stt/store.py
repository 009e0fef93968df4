"""
Redis-backed transcript store.

Keys (all share one expiry window, reset on every write):
    session:{id}:transcript  current snapshot, overwritten on each save
    session:{id}:summary     last-updated timestamp, length and status
    session:{id}:timeindex   sorted set of every saved snapshot, score = timestamp

Persistence is best-effort relative to the live call: failures are logged,
counted and reported as False / None, never raised to the caller.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from shared.observability import MetricTimer, STORE_WRITE_DURATION, record_store_write

from .errors import PersistenceError
from .models import TranscriptSnapshot

logger = logging.getLogger(__name__)

TRANSCRIPT_KEY = "session:{session_id}:transcript"
SUMMARY_KEY = "session:{session_id}:summary"
TIMEINDEX_KEY = "session:{session_id}:timeindex"

STATUS_ACTIVE = "Active"
STATUS_CLOSED = "Closed"


class TranscriptStore:
    """
    Snapshot persistence over an async Redis client.

    The client may be attached after construction; until then every write
    fails softly.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: int = 24 * 3600):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

        # Metrics
        self.writes_ok = 0
        self.writes_failed = 0

    def attach(self, redis_client: Optional[redis.Redis]) -> None:
        self.redis = redis_client

    @property
    def is_available(self) -> bool:
        return self.redis is not None

    @staticmethod
    def keys(session_id: str) -> Dict[str, str]:
        return {
            "transcript": TRANSCRIPT_KEY.format(session_id=session_id),
            "summary": SUMMARY_KEY.format(session_id=session_id),
            "timeindex": TIMEINDEX_KEY.format(session_id=session_id),
        }

    def _require_client(self) -> redis.Redis:
        if self.redis is None:
            raise PersistenceError("Transcript store is not connected to Redis")
        return self.redis

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def _write_snapshot(self, session_id: str, snapshot: TranscriptSnapshot) -> None:
        client = self._require_client()
        keys = self.keys(session_id)
        record = snapshot.to_json()
        summary = {
            "session_id": session_id,
            "call_id": snapshot.call_id,
            "last_updated": snapshot.timestamp,
            "transcript_length": len(snapshot.text),
            "snapshot_id": snapshot.snapshot_id,
            "status": STATUS_ACTIVE,
        }

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(keys["transcript"], record, ex=self.ttl_seconds)
                pipe.set(keys["summary"], json.dumps(summary, ensure_ascii=False), ex=self.ttl_seconds)
                pipe.zadd(keys["timeindex"], {record: snapshot.timestamp})
                pipe.expire(keys["timeindex"], self.ttl_seconds)
                await pipe.execute()
        except Exception as e:
            raise PersistenceError(f"Snapshot write failed for {session_id}: {type(e).__name__}: {e}") from e

    async def save_snapshot(self, session_id: str, snapshot: TranscriptSnapshot) -> bool:
        """
        Overwrite the session's current snapshot and append it to the time index.

        Returns:
            bool: True if all records were written
        """
        timer = MetricTimer(STORE_WRITE_DURATION)
        try:
            async with timer:
                await self._write_snapshot(session_id, snapshot)
        except PersistenceError as e:
            self.writes_failed += 1
            record_store_write("error")
            logger.error(f"[{session_id}] ❌ {e}")
            return False

        self.writes_ok += 1
        record_store_write("ok")
        logger.info(
            f"[{session_id}] 💾 Saved transcript snapshot | length: {len(snapshot.text)} | "
            f"{(timer.duration or 0.0) * 1000:.1f}ms"
        )
        return True

    async def mark_closed(self, session_id: str) -> bool:
        """Set the summary status to Closed, keeping the other summary fields."""
        try:
            client = self._require_client()
            key = self.keys(session_id)["summary"]
            raw = await client.get(key)
            summary = json.loads(raw) if raw else {"session_id": session_id}
            summary["status"] = STATUS_CLOSED
            summary["closed_at"] = time.time()
            await client.set(key, json.dumps(summary, ensure_ascii=False), ex=self.ttl_seconds)
        except PersistenceError as e:
            logger.warning(f"[{session_id}] ⚠️ {e}")
            return False
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Failed to mark session closed: {e}")
            return False
        return True

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def get_snapshot(self, session_id: str) -> Optional[TranscriptSnapshot]:
        """Most recent snapshot, or None when absent or unreadable."""
        try:
            client = self._require_client()
            raw = await client.get(self.keys(session_id)["transcript"])
            if raw is None:
                return None
            return TranscriptSnapshot.from_json(raw)
        except PersistenceError as e:
            logger.warning(f"[{session_id}] ⚠️ {e}")
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Failed to read transcript snapshot: {e}")
        return None

    async def get_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            client = self._require_client()
            raw = await client.get(self.keys(session_id)["summary"])
            return json.loads(raw) if raw else None
        except PersistenceError as e:
            logger.warning(f"[{session_id}] ⚠️ {e}")
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Failed to read transcript summary: {e}")
        return None

    async def get_history(
        self,
        session_id: str,
        count: int = 50,
        ascending: bool = False,
    ) -> List[TranscriptSnapshot]:
        """
        Saved snapshots in time order, newest first unless `ascending`.

        Returns an empty list on failure.
        """
        if count <= 0:
            return []
        try:
            client = self._require_client()
            members = await client.zrange(
                self.keys(session_id)["timeindex"], 0, count - 1, desc=not ascending
            )
        except PersistenceError as e:
            logger.warning(f"[{session_id}] ⚠️ {e}")
            return []
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Failed to read transcript history: {e}")
            return []

        history: List[TranscriptSnapshot] = []
        for member in members:
            try:
                history.append(TranscriptSnapshot.from_json(member))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"[{session_id}] ⚠️ Skipping unreadable history entry: {e}")
        return history

    async def ping(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.error(f"Redis PING failed: {e}")
            return False

    def stats(self) -> dict:
        return {
            "available": self.is_available,
            "writes_ok": self.writes_ok,
            "writes_failed": self.writes_failed,
            "ttl_seconds": self.ttl_seconds,
        }

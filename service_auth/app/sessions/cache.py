"""
In-memory session cache keyed by token fingerprint.
"""

import asyncio
import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..validation.models import SessionTokenPayload, Valid


def fingerprint(raw_token: str) -> str:
    """Cache key for a raw token; not a security primitive."""
    return hashlib.md5(raw_token.encode("utf-8"), usedforsecurity=False).hexdigest()


@dataclass
class CachedSession:
    fingerprint: str
    payload: SessionTokenPayload
    tenant_origin: str
    expires_at: float
    cached_at: float
    access_token: Optional[str] = None
    scope: Optional[str] = None
    hit_count: int = 0
    last_proactive_refresh: Optional[float] = None

    def __repr__(self) -> str:
        return (
            f"CachedSession(fingerprint={self.fingerprint!r}, tenant_origin={self.tenant_origin!r}, "
            f"expires_at={self.expires_at}, hit_count={self.hit_count})"
        )


class SessionCache:
    """Sessions and validation results for recently seen tokens.

    All state lives behind one lock so the cache can be shared between the
    request handlers and the background sweep.
    """

    def __init__(self,
                 ttl_seconds: float = 300,
                 max_size: int = 1000,
                 validation_ttl_seconds: float = 60,
                 refresh_threshold_seconds: float = 15,
                 cleanup_interval_seconds: float = 300.0,
                 enable_proactive_refresh: bool = True,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.validation_ttl_seconds = validation_ttl_seconds
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.enable_proactive_refresh = enable_proactive_refresh
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("auth.session_cache")

        self._lock = threading.Lock()
        self._sessions: Dict[str, CachedSession] = {}
        self._validations: Dict[str, Tuple[Valid, float]] = {}
        self._refreshing: Set[str] = set()
        self._stats = self._empty_stats()

        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "evictions": 0,
            "validation_hits": 0,
            "refresh_attempts": 0,
        }

    def _event(self, event: str):
        if self.metrics:
            self.metrics.increment_counter("session_cache_events_total", event=event)

    def _is_live(self, session: CachedSession, now: float) -> bool:
        return now <= session.expires_at and now <= session.cached_at + self.ttl_seconds

    def lookup(self, fp: str) -> Optional[CachedSession]:
        """Return the live session for a fingerprint and record the hit."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(fp)
            if session is None:
                self._stats["misses"] += 1
                event = "miss"
            elif not self._is_live(session, now):
                del self._sessions[fp]
                self._stats["expired"] += 1
                self._stats["misses"] += 1
                session = None
                event = "expired"
            else:
                session.hit_count += 1
                self._stats["hits"] += 1
                event = "hit"
        self._event(event)
        return session

    def store(self, fp: str, session: CachedSession):
        """Insert or replace a session, evicting the oldest quarter when full."""
        with self._lock:
            if fp not in self._sessions and len(self._sessions) >= self.max_size:
                self._evict_oldest()
            self._sessions[fp] = session
            size = len(self._sessions)
        if self.metrics:
            self.metrics.set_gauge("session_cache_size", size)

    def _evict_oldest(self):
        count = max(1, len(self._sessions) // 4)
        oldest = sorted(self._sessions.values(), key=lambda s: s.cached_at)[:count]
        for session in oldest:
            del self._sessions[session.fingerprint]
        self._stats["evictions"] += count
        self.logger.info("Evicted cached sessions", count=count, max_size=self.max_size)
        self._event("eviction")

    def remove(self, fp: str):
        with self._lock:
            self._sessions.pop(fp, None)
            self._validations.pop(fp, None)

    def should_proactively_refresh(self, session: CachedSession) -> bool:
        """True once per session, inside the last ``refresh_threshold_seconds`` of its token.

        The refresh only renews the access token. The entry still ends at the
        session token's ``exp``, after which the client presents a new token.
        """
        if not self.enable_proactive_refresh or session.last_proactive_refresh is not None:
            return False
        time_until_expiry = session.expires_at - self._clock()
        with self._lock:
            in_flight = session.fingerprint in self._refreshing
        return time_until_expiry < self.refresh_threshold_seconds and not in_flight

    def begin_refresh(self, fp: str) -> bool:
        """Mark a refresh as in flight; False if one already is."""
        with self._lock:
            if fp in self._refreshing:
                return False
            self._refreshing.add(fp)
            self._stats["refresh_attempts"] += 1
            return True

    def finish_refresh(self, fp: str, access_token: Optional[str] = None, scope: Optional[str] = None):
        with self._lock:
            self._refreshing.discard(fp)
            session = self._sessions.get(fp)
            if session is not None and access_token:
                session.access_token = access_token
                if scope is not None:
                    session.scope = scope
                session.last_proactive_refresh = self._clock()

    def get_validation(self, fp: str) -> Optional[Valid]:
        now = self._clock()
        with self._lock:
            entry = self._validations.get(fp)
            if entry is None:
                return None
            result, stored_at = entry
            if now > stored_at + self.validation_ttl_seconds:
                del self._validations[fp]
                return None
            self._stats["validation_hits"] += 1
            return result

    def store_validation(self, fp: str, result: Valid):
        if not isinstance(result, Valid):
            return
        with self._lock:
            self._validations[fp] = (result, self._clock())

    def sweep(self) -> int:
        """Drop expired sessions and validation results; returns sessions removed."""
        now = self._clock()
        with self._lock:
            expired = [fp for fp, s in self._sessions.items() if not self._is_live(s, now)]
            for fp in expired:
                del self._sessions[fp]
            stale = [
                fp for fp, (_, stored_at) in self._validations.items()
                if now > stored_at + self.validation_ttl_seconds
            ]
            for fp in stale:
                del self._validations[fp]
            self._stats["expired"] += len(expired)
            size = len(self._sessions)

        if expired or stale:
            self.logger.debug("Swept session cache", sessions=len(expired), validations=len(stale))
        if self.metrics:
            self.metrics.set_gauge("session_cache_size", size)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
                "size": len(self._sessions),
                "validation_size": len(self._validations),
                "refreshing": len(self._refreshing),
                "max_size": self.max_size,
            }

    def clear(self):
        with self._lock:
            self._sessions.clear()
            self._validations.clear()
            self._refreshing.clear()
            self._stats = self._empty_stats()
        self.logger.info("Session cache cleared")

    async def start(self):
        """Start the periodic sweep."""
        if self._sweep_task is not None:
            return
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Session cache sweep started", interval=self.cleanup_interval_seconds)

    async def stop(self):
        """Stop the periodic sweep."""
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.logger.info("Session cache sweep stopped")

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.cleanup_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in session cache sweep", error=str(e))

"""
Unit tests for SessionCache.
"""

import asyncio

import pytest

from service_auth.app.sessions.cache import CachedSession, SessionCache, fingerprint
from service_auth.app.validation.models import (
    DeviceClass,
    Invalid,
    ErrorKind,
    SessionTokenPayload,
    Valid,
    ValidationMetadata,
)


class FakeClock:
    def __init__(self, now=1_750_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_payload(now, lifetime=3600):
    return SessionTokenPayload(
        issuer="https://shop.myshopify.com/admin",
        destination="https://shop.myshopify.com",
        audience="client-id",
        subject="42",
        expires_at=now + lifetime,
        not_before=now,
        issued_at=now,
        session_id="sid-1",
    )


def make_session(fp, clock, lifetime=3600, cached_at=None):
    return CachedSession(
        fingerprint=fp,
        payload=make_payload(clock(), lifetime),
        tenant_origin="shop.myshopify.com",
        expires_at=clock() + lifetime,
        cached_at=clock() if cached_at is None else cached_at,
        access_token="shpua_1",
    )


def make_valid(clock):
    return Valid(
        payload=make_payload(clock()),
        metadata=ValidationMetadata(
            tenant_origin="shop.myshopify.com",
            device_class=DeviceClass.DESKTOP,
            should_refresh_soon=False,
            time_until_expiry=3600,
        ),
    )


class TestSessionCache:
    """Test cases for SessionCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return SessionCache(ttl_seconds=300, max_size=8, validation_ttl_seconds=60,
                            refresh_threshold_seconds=120, clock=clock)

    def test_fingerprint_is_stable(self):
        assert fingerprint("a.b.c") == fingerprint("a.b.c")
        assert fingerprint("a.b.c") != fingerprint("a.b.d")
        assert len(fingerprint("a.b.c")) == 32

    def test_lookup_records_hits(self, cache, clock):
        cache.store("fp", make_session("fp", clock))

        first = cache.lookup("fp")
        second = cache.lookup("fp")

        assert first is second
        assert second.hit_count == 2
        assert cache.stats()["hits"] == 2

    def test_miss(self, cache):
        assert cache.lookup("unknown") is None
        assert cache.stats()["misses"] == 1

    def test_cache_ttl_expires_session(self, cache, clock):
        cache.store("fp", make_session("fp", clock))
        clock.advance(301)

        assert cache.lookup("fp") is None
        assert cache.stats()["expired"] == 1
        assert cache.stats()["size"] == 0

    def test_token_expiry_expires_session(self, cache, clock):
        cache.store("fp", make_session("fp", clock, lifetime=60))
        clock.advance(61)

        assert cache.lookup("fp") is None

    def test_eviction_removes_oldest_quarter(self, cache, clock):
        for index in range(8):
            cache.store(f"fp{index}", make_session(f"fp{index}", clock, cached_at=clock() + index))

        cache.store("new", make_session("new", clock, cached_at=clock() + 100))

        stats = cache.stats()
        assert stats["size"] == 7
        assert stats["evictions"] == 2
        assert cache.lookup("fp0") is None
        assert cache.lookup("fp1") is None
        assert cache.lookup("fp2") is not None
        assert cache.lookup("new") is not None

    def test_eviction_removes_at_least_one(self, clock):
        cache = SessionCache(max_size=2, clock=clock)
        cache.store("a", make_session("a", clock, cached_at=clock()))
        cache.store("b", make_session("b", clock, cached_at=clock() + 1))
        cache.store("c", make_session("c", clock, cached_at=clock() + 2))

        assert cache.stats()["evictions"] == 1
        assert cache.lookup("a") is None

    def test_replacing_existing_entry_does_not_evict(self, clock):
        cache = SessionCache(max_size=1, clock=clock)
        cache.store("a", make_session("a", clock))
        cache.store("a", make_session("a", clock))

        assert cache.stats()["evictions"] == 0

    def test_validation_memo(self, cache, clock):
        result = make_valid(clock)
        cache.store_validation("fp", result)

        assert cache.get_validation("fp") is result
        clock.advance(61)
        assert cache.get_validation("fp") is None

    def test_validation_memo_ignores_failures(self, cache):
        cache.store_validation("fp", Invalid(ErrorKind.EXPIRED, "expired", {}))
        assert cache.get_validation("fp") is None

    def test_proactive_refresh_gate(self, cache, clock):
        session = make_session("fp", clock, lifetime=100)
        cache.store("fp", session)

        assert cache.should_proactively_refresh(session)
        assert cache.begin_refresh("fp") is True
        assert cache.begin_refresh("fp") is False
        assert not cache.should_proactively_refresh(session)

        cache.finish_refresh("fp", access_token="shpua_2")

        assert session.access_token == "shpua_2"
        assert session.last_proactive_refresh == clock()
        assert cache.stats()["refresh_attempts"] == 1
        assert not cache.should_proactively_refresh(session)

    def test_no_refresh_when_far_from_expiry(self, cache, clock):
        assert not cache.should_proactively_refresh(make_session("fp", clock, lifetime=3600))

    def test_default_threshold_is_inside_token_lifetime(self, clock):
        cache = SessionCache(clock=clock)
        assert not cache.should_proactively_refresh(make_session("fp", clock, lifetime=60))
        assert cache.should_proactively_refresh(make_session("fp", clock, lifetime=10))

    def test_refresh_disabled(self, clock):
        cache = SessionCache(enable_proactive_refresh=False, clock=clock)
        assert not cache.should_proactively_refresh(make_session("fp", clock, lifetime=10))

    def test_sweep_removes_expired_entries(self, cache, clock):
        cache.store("old", make_session("old", clock))
        cache.store_validation("old", make_valid(clock))
        clock.advance(200)
        cache.store("fresh", make_session("fresh", clock))
        clock.advance(150)

        removed = cache.sweep()

        assert removed == 1
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["validation_size"] == 0

    def test_clear(self, cache, clock):
        cache.store("fp", make_session("fp", clock))
        cache.lookup("fp")
        cache.clear()

        stats = cache.stats()
        assert stats["size"] == 0
        assert stats["hits"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop_background_sweep(self, clock):
        cache = SessionCache(cleanup_interval_seconds=0.01, clock=clock)
        cache.store("fp", make_session("fp", clock, lifetime=10))
        clock.advance(11)

        await cache.start()
        await asyncio.sleep(0.05)
        await cache.stop()

        assert cache.stats()["size"] == 0
        assert cache.running is False

"""Tests for the refresh-token ledger."""

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.schemas import AuthUserProfile
from authgate.service.errors import AuthenticationError
from authgate.service.signing import HmacJwtSigner
from authgate.service.tokens import TokenLedger
from authgate.storage.memory import MemoryStore
from authgate.storage.models import ROOT_PARENT_ID, RefreshTokenRecord


class FakeCache:
    """In-process stand-in for the Redis rotation/revocation keys."""

    def __init__(self):
        self.claims = set()
        self.revoked = {}

    async def claim_refresh_rotation(self, record_id, ttl_seconds):
        if record_id in self.claims:
            return False
        self.claims.add(record_id)
        return True

    async def release_refresh_rotation(self, record_id):
        self.claims.discard(record_id)

    async def mark_refresh_revoked(self, record_id, ttl_seconds):
        self.revoked[record_id] = ttl_seconds

    async def is_refresh_revoked(self, record_id):
        return record_id in self.revoked


class UnavailableCache:
    """Cache whose every call fails as if Redis were down."""

    async def claim_refresh_rotation(self, record_id, ttl_seconds):
        raise RedisConnectionError("connection refused")

    async def release_refresh_rotation(self, record_id):
        raise RedisConnectionError("connection refused")

    async def mark_refresh_revoked(self, record_id, ttl_seconds):
        raise RedisConnectionError("connection refused")

    async def is_refresh_revoked(self, record_id):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger_factory(store, make_settings, fast_hasher):
    def _make(cache=None, **overrides):
        settings = make_settings(**overrides)
        return TokenLedger(
            store, HmacJwtSigner(settings), settings, cache=cache, hasher=fast_hasher
        )

    return _make


@pytest.fixture
def ledger(ledger_factory):
    return ledger_factory()


@pytest.fixture
def user(store):
    return store.create_user("person@example.com", username="person")


def build_profile(user):
    return AuthUserProfile(
        id=user.id,
        email=user.email,
        username=user.username or "",
        display_name=user.display_name or user.email,
    )


def keep_username(user):
    return user


class TestIssue:
    def test_issue_persists_hash_and_id(self, ledger, store, user):
        issued = ledger.issue(user.id)
        record = store.get_refresh_token(issued.storage_id)
        assert record.token_id == ledger.extract_token_id(issued.raw_token)
        assert record.token_hash != issued.raw_token
        assert issued.raw_token not in record.token_hash
        assert record.rotation_parent_id == ROOT_PARENT_ID
        assert record.revoked is False

    def test_issue_uses_configured_ttl(self, ledger_factory, store, user):
        ledger = ledger_factory(refresh_token_ttl_days=3)
        before = datetime.now(timezone.utc)
        issued = ledger.issue(user.id)
        assert before + timedelta(days=3) <= issued.expires_at
        assert issued.expires_at <= datetime.now(timezone.utc) + timedelta(days=3)

    def test_issue_records_parent(self, ledger, store, user):
        issued = ledger.issue(user.id, parent_id="parent-1")
        assert store.get_refresh_token(issued.storage_id).rotation_parent_id == "parent-1"

    def test_tokens_are_unique(self, ledger, user):
        raws = {ledger.issue(user.id).raw_token for _ in range(5)}
        assert len(raws) == 5


class TestExtractTokenId:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("abc.def", "abc"),
            ("abc.def.ghi", "abc"),
            ("legacy", "legacy"),
            (".secret", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, raw, expected):
        assert TokenLedger.extract_token_id(raw) == expected


class TestFindRecord:
    def test_indexed_lookup(self, ledger, user):
        issued = ledger.issue(user.id)
        assert ledger.find_record(issued.raw_token).id == issued.storage_id
        assert ledger.stats["fallback_scans"] == 0

    def test_fallback_scan_finds_unindexed_token(self, ledger, store, user, fast_hasher):
        raw = "legacy-token-without-delimiter"
        record = RefreshTokenRecord.new(
            user.id,
            fast_hasher.hash(raw),
            datetime.now(timezone.utc) + timedelta(days=1),
        )
        store.create_refresh_token(record)
        found = ledger.find_record(raw)
        assert found.id == record.id
        assert ledger.stats == {"fallback_scans": 1, "fallback_hits": 1}

    def test_fallback_scan_is_capped(self, ledger_factory, store, user, fast_hasher):
        ledger = ledger_factory(refresh_token_scan_limit=1)
        now = datetime.now(timezone.utc)
        target = RefreshTokenRecord(
            id="old",
            user_id=user.id,
            token_hash=fast_hasher.hash("old-legacy"),
            expires_at=now + timedelta(days=1),
            created_at=now - timedelta(hours=2),
        )
        newer = RefreshTokenRecord(
            id="new",
            user_id=user.id,
            token_hash=fast_hasher.hash("new-legacy"),
            expires_at=now + timedelta(days=1),
            created_at=now - timedelta(hours=1),
        )
        store.create_refresh_token(target)
        store.create_refresh_token(newer)
        assert ledger.find_record("old-legacy") is None
        assert ledger.find_record("new-legacy").id == "new"
        assert ledger.stats == {"fallback_scans": 2, "fallback_hits": 1}

    def test_fallback_skips_revoked(self, ledger, store, user, fast_hasher):
        raw = "legacy-revoked"
        record = RefreshTokenRecord.new(
            user.id, fast_hasher.hash(raw), datetime.now(timezone.utc) + timedelta(days=1)
        )
        store.create_refresh_token(record)
        store.update_refresh_token(record.id, revoked=True)
        assert ledger.find_record(raw) is None


class TestDeriveAccessExpiry:
    def test_signed_token(self, ledger):
        token = ledger.signer.sign({"sub": "u"})
        expiry = ledger.derive_access_expiry(token)
        assert expiry.tzinfo is not None
        assert expiry > datetime.now(timezone.utc)

    @pytest.mark.parametrize("exp", [True, "1700000000", None])
    def test_non_numeric_exp(self, ledger, exp):
        token = ledger.signer.sign({"exp": exp})
        assert ledger.derive_access_expiry(token) is None

    def test_garbage(self, ledger):
        assert ledger.derive_access_expiry("not-a-jwt") is None
        assert ledger.derive_access_expiry("a.!!!.c") is None


class TestRefresh:
    @pytest.mark.parametrize("raw", [None, "", "   \t"])
    async def test_missing_token(self, ledger, raw):
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(raw, build_profile, keep_username)
        assert exc_info.value.message == "Missing refresh token"

    async def test_unknown_token(self, ledger, user):
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh("unknown.value", build_profile, keep_username)
        assert exc_info.value.message == "Invalid refresh token"

    async def test_rotation(self, ledger, store, user):
        issued = ledger.issue(user.id)
        result = await ledger.refresh(issued.raw_token, build_profile, keep_username)

        assert result.refresh_token != issued.raw_token
        assert result.user.id == user.id
        assert result.access_token_expires_at is not None
        claims = ledger.signer.verify(result.access_token)
        assert claims["sub"] == user.id
        assert claims["email"] == "person@example.com"
        assert claims["username"] == "person"

        old = store.get_refresh_token(issued.storage_id)
        assert old.revoked is True
        child = ledger.find_record(result.refresh_token)
        assert child.rotation_parent_id == issued.storage_id
        assert child.revoked is False

    async def test_reuse_after_rotation_is_revoked(self, ledger, user):
        issued = ledger.issue(user.id)
        await ledger.refresh(issued.raw_token, build_profile, keep_username)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token revoked"

    async def test_expired_is_revoked_before_failing(self, ledger, store, user):
        issued = ledger.issue(user.id)
        store.refresh_tokens[issued.storage_id].expires_at = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token expired"
        assert store.get_refresh_token(issued.storage_id).revoked is True

        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token revoked"

    async def test_hash_mismatch_with_known_id(self, ledger, store, user):
        issued = ledger.issue(user.id)
        token_id = ledger.extract_token_id(issued.raw_token)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(f"{token_id}.guessed", build_profile, keep_username)
        assert exc_info.value.message == "Invalid refresh token"
        assert store.get_refresh_token(issued.storage_id).revoked is False

    async def test_missing_user_revokes(self, ledger, store):
        issued = ledger.issue("ghost-user")
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "User not found for refresh token"
        assert store.get_refresh_token(issued.storage_id).revoked is True

    async def test_async_username_hook(self, ledger, store):
        bare = store.create_user("bare@example.com")
        issued = ledger.issue(bare.id)

        async def assign(user):
            return store.update_user(user.id, username="bare")

        result = await ledger.refresh(issued.raw_token, build_profile, assign)
        assert result.user.username == "bare"
        assert ledger.signer.verify(result.access_token)["username"] == "bare"

    async def test_lineage_walks_to_root(self, ledger, user):
        first = ledger.issue(user.id)
        second = await ledger.refresh(first.raw_token, build_profile, keep_username)
        third = await ledger.refresh(second.refresh_token, build_profile, keep_username)
        newest = ledger.find_record(third.refresh_token)

        chain = ledger.lineage(newest.id)
        assert len(chain) == 3
        assert chain[-1].id == first.storage_id
        assert chain[-1].rotation_parent_id == ROOT_PARENT_ID
        assert [r.revoked for r in chain] == [False, True, True]

    def test_lineage_unknown_record(self, ledger):
        assert ledger.lineage("missing") == []


class TestRotationClaim:
    async def test_lost_claim_fails_as_revoked(self, ledger_factory, store, user):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache, refresh_rotation_lock=True)
        issued = ledger.issue(user.id)
        cache.claims.add(issued.storage_id)

        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token revoked"
        assert len(store.refresh_tokens) == 1

    async def test_claim_taken_on_rotation(self, ledger_factory, user):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache, refresh_rotation_lock=True)
        issued = ledger.issue(user.id)
        await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert issued.storage_id in cache.claims
        assert issued.storage_id in cache.revoked

    async def test_claim_ignored_when_disabled(self, ledger_factory, user):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache)
        issued = ledger.issue(user.id)
        cache.claims.add(issued.storage_id)
        result = await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert result.refresh_token

    async def test_cache_revocation_marker_is_honoured(self, ledger_factory, store, user):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache)
        issued = ledger.issue(user.id)
        await cache.mark_refresh_revoked(issued.storage_id, 60)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token revoked"

    async def test_failed_username_hook_leaves_token_usable(self, ledger_factory, store, user):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache, refresh_rotation_lock=True)
        issued = ledger.issue(user.id)

        def broken(user):
            raise OSError("disk full")

        with pytest.raises(OSError):
            await ledger.refresh(issued.raw_token, build_profile, broken)
        assert issued.storage_id not in cache.claims
        assert store.get_refresh_token(issued.storage_id).revoked is False

        result = await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert result.refresh_token
        assert store.get_refresh_token(issued.storage_id).revoked is True

    async def test_failed_issue_releases_claim(self, ledger_factory, store, user, monkeypatch):
        cache = FakeCache()
        ledger = ledger_factory(cache=cache, refresh_rotation_lock=True)
        issued = ledger.issue(user.id)

        def failing_issue(user_id, parent_id=None):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(ledger, "issue", failing_issue)
        with pytest.raises(RuntimeError):
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert issued.storage_id not in cache.claims
        assert store.get_refresh_token(issued.storage_id).revoked is False

        monkeypatch.undo()
        result = await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert ledger.find_record(result.refresh_token).rotation_parent_id == issued.storage_id


class TestUnavailableCache:
    async def test_rotation_completes_on_store_state(self, ledger_factory, store, user):
        ledger = ledger_factory(cache=UnavailableCache(), refresh_rotation_lock=True)
        issued = ledger.issue(user.id)

        result = await ledger.refresh(issued.raw_token, build_profile, keep_username)

        assert store.get_refresh_token(issued.storage_id).revoked is True
        child = ledger.find_record(result.refresh_token)
        assert child.rotation_parent_id == issued.storage_id
        assert child.revoked is False
        assert len(store.refresh_tokens) == 2

    async def test_reuse_still_detected_from_store(self, ledger_factory, user):
        ledger = ledger_factory(cache=UnavailableCache())
        issued = ledger.issue(user.id)
        await ledger.refresh(issued.raw_token, build_profile, keep_username)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token revoked"

    async def test_expired_token_revoked_in_store(self, ledger_factory, store, user):
        ledger = ledger_factory(cache=UnavailableCache())
        issued = ledger.issue(user.id)
        store.refresh_tokens[issued.storage_id].expires_at = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)
        with pytest.raises(AuthenticationError) as exc_info:
            await ledger.refresh(issued.raw_token, build_profile, keep_username)
        assert exc_info.value.message == "Refresh token expired"
        assert store.get_refresh_token(issued.storage_id).revoked is True

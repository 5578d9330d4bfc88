"""Unit tests for access-token signing and refresh-token rotation."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from knowledgecenter.config import Settings
from knowledgecenter.service.credentials import CredentialVault
from knowledgecenter.service.errors import InvalidToken, TokenExpired, TokenRevoked
from knowledgecenter.service.tokens import AccessClaims, TokenAuthority
from knowledgecenter.storage.memory import MemoryStore

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def vault():
    v = CredentialVault(workers=1)
    yield v
    v.shutdown()


@pytest.fixture
def authority(store, vault, settings):
    return TokenAuthority(store, vault, settings)


@pytest.fixture
def user(store):
    created = store.create_user("alice", "alice@x.io", {"en-US": "Alice"}, "$argon2id$stub")
    public = store.get_group_by_public_id("public")
    store.add_user_to_group(created.id, public.id)
    return created


def _segments(token):
    header, payload, _ = token.split(".")
    pad = lambda s: s + "=" * (-len(s) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
    )


class TestAccessTokens:
    """Tests for HS256 access tokens."""

    def test_claims_round_trip(self, authority, user):
        token = authority.issue_access_token(user, ["user"])

        claims = authority.validate_access_token(token)

        assert isinstance(claims, AccessClaims)
        assert claims.user_id == user.public_id
        assert claims.login_id == "alice"
        assert claims.email == "alice@x.io"
        assert claims.roles == ["user"]
        assert claims.issuer == "knowledgecenter-api"
        assert claims.expires_at - claims.issued_at == 15 * 60
        assert len(claims.jti) == 32

    def test_header_pins_hs256(self, authority, user):
        header, _ = _segments(authority.issue_access_token(user, []))

        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_each_token_gets_unique_jti(self, authority, user):
        first = authority.validate_access_token(authority.issue_access_token(user, []))
        second = authority.validate_access_token(authority.issue_access_token(user, []))

        assert first.jti != second.jti

    def test_tampered_signature_rejected(self, authority, user):
        token = authority.issue_access_token(user, ["user"])
        header, payload, sig = token.split(".")
        forged_sig = ("A" if sig[0] != "A" else "B") + sig[1:]

        with pytest.raises(InvalidToken):
            authority.validate_access_token(f"{header}.{payload}.{forged_sig}")

    def test_modified_payload_rejected(self, authority, user):
        token = authority.issue_access_token(user, ["user"])
        header, _, sig = token.split(".")
        escalated = authority._encode_segment(
            json.dumps({"user_id": user.public_id, "roles": ["full_access"], "exp": 9999999999}).encode()
        )

        with pytest.raises(InvalidToken):
            authority.validate_access_token(f"{header}.{escalated}.{sig}")

    def test_other_algorithm_rejected(self, authority, user):
        token = authority.issue_access_token(user, ["user"])
        _, payload, sig = token.split(".")
        none_header = authority._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(InvalidToken):
            authority.validate_access_token(f"{none_header}.{payload}.{sig}")

    def test_token_signed_with_other_secret_rejected(self, store, vault, user):
        other = TokenAuthority(store, vault, Settings(jwt_secret="another-secret-value"))
        token = other.issue_access_token(user, ["user"])
        authority = TokenAuthority(store, vault, Settings(jwt_secret=SECRET))

        with pytest.raises(InvalidToken):
            authority.validate_access_token(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "....", "h.p.sigé"])
    def test_malformed_tokens_rejected(self, authority, garbage):
        with pytest.raises(InvalidToken):
            authority.validate_access_token(garbage)

    @pytest.mark.parametrize("signature", ["sigé", "sig\udcff", "ключ"])
    def test_non_ascii_signature_rejected(self, authority, signature):
        header = authority._encode_segment(b'{"alg":"HS256"}')
        payload = authority._encode_segment(b'{"exp":9999999999}')

        with pytest.raises(InvalidToken):
            authority.validate_access_token(f"{header}.{payload}.{signature}")

    def test_expired_token_rejected(self, authority, user, monkeypatch):
        token = authority.issue_access_token(user, ["user"])
        later = datetime.now(timezone.utc) + timedelta(minutes=15, seconds=1)
        monkeypatch.setattr(authority, "_now", lambda: later)

        with pytest.raises(InvalidToken):
            authority.validate_access_token(token)

    def test_token_valid_just_before_expiry(self, authority, user, monkeypatch):
        token = authority.issue_access_token(user, ["user"])
        claims = authority.validate_access_token(token)
        almost = datetime.fromtimestamp(claims.expires_at - 1, tz=timezone.utc)
        monkeypatch.setattr(authority, "_now", lambda: almost)

        assert authority.validate_access_token(token).user_id == user.public_id

    def test_missing_optional_claims_default_to_zero_values(self, authority):
        token = authority._encode_jwt({"exp": 9999999999})

        claims = authority.validate_access_token(token)

        assert claims.user_id == ""
        assert claims.roles == []

    def test_signed_token_without_exp_rejected(self, authority):
        token = authority._encode_jwt({"user_id": "u-1", "roles": ["user"]})

        with pytest.raises(InvalidToken):
            authority.validate_access_token(token)


class TestRefreshRotation:
    """Tests for refresh-token issue, rotation and reuse detection."""

    def test_issued_record_is_findable_by_hash(self, authority, store, vault, user):
        secret, record = authority.issue_refresh_token(user, client_ip="10.0.0.1")

        found = store.get_token_by_hash(vault.hash_token(secret))

        assert found is not None
        assert found.id == record.id
        assert found.is_revoked is False
        assert found.client_ip == "10.0.0.1"
        lifetime = found.expires_at - found.created_at
        assert abs(lifetime - timedelta(days=7)) < timedelta(seconds=5)

    def test_only_hash_is_stored(self, authority, store, user):
        secret, record = authority.issue_refresh_token(user)

        assert record.token_hash != secret
        assert all(r.token_hash != secret for r in store.list_user_tokens(user.id))

    def test_rotation_marks_predecessor_replaced(self, authority, store, user):
        secret, original = authority.issue_refresh_token(user)

        rotated_user, tokens = authority.rotate(secret)

        old = store.get_token(original.id)
        new = store.get_token(tokens.refresh_record.id)
        assert rotated_user.id == user.id
        assert old.is_revoked is True
        assert old.replaced_by_token_id == new.id
        assert new.is_revoked is False
        assert new.parent_token_id == old.id
        assert tokens.refresh_secret != secret

    def test_rotation_issues_access_token_with_current_roles(self, authority, store, user):
        secret, _ = authority.issue_refresh_token(user)
        store.assign_user_role(user.id, "editor")

        _, tokens = authority.rotate(secret)

        claims = authority.validate_access_token(tokens.access_token)
        assert claims.roles == ["editor", "user"]
        assert tokens.expires_in == 900
        assert tokens.token_type == "Bearer"

    def test_unknown_secret_is_invalid(self, authority):
        with pytest.raises(InvalidToken):
            authority.rotate("never-issued")

    def test_reuse_revokes_whole_lineage(self, authority, store, user):
        first, _ = authority.issue_refresh_token(user)
        other_device, _ = authority.issue_refresh_token(user)
        _, rotated = authority.rotate(first)

        with pytest.raises(TokenRevoked):
            authority.rotate(first)

        assert all(r.is_revoked for r in store.list_user_tokens(user.id))
        with pytest.raises(TokenRevoked):
            authority.rotate(rotated.refresh_secret)
        with pytest.raises(TokenRevoked):
            authority.rotate(other_device)

    def test_reuse_still_rejected_when_lineage_revoke_fails(self, authority, store, user, monkeypatch):
        secret, _ = authority.issue_refresh_token(user)
        authority.rotate(secret)

        def broken(_user_id):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "revoke_all_user_tokens", broken)

        with pytest.raises(TokenRevoked):
            authority.rotate(secret)

    def test_expired_secret_leaves_siblings_untouched(self, authority, store, user, monkeypatch):
        stale, stale_record = authority.issue_refresh_token(user)
        fresh, fresh_record = authority.issue_refresh_token(user)
        later = stale_record.expires_at + timedelta(seconds=1)
        monkeypatch.setattr(authority, "_now", lambda: later)

        with pytest.raises(TokenExpired):
            authority.rotate(stale)

        assert store.get_token(stale_record.id).is_revoked is False
        assert store.get_token(fresh_record.id).is_revoked is False

    def test_revoked_check_precedes_expiry(self, authority, store, user, monkeypatch):
        secret, record = authority.issue_refresh_token(user)
        store.revoke_token(record.id)
        monkeypatch.setattr(authority, "_now", lambda: record.expires_at + timedelta(days=1))

        with pytest.raises(TokenRevoked):
            authority.rotate(secret)

    def test_revoke_is_noop_for_unknown_secret(self, authority):
        assert authority.revoke("never-issued") is False

    def test_revoke_marks_record(self, authority, store, user):
        secret, record = authority.issue_refresh_token(user)

        assert authority.revoke(secret) is True
        assert store.get_token(record.id).is_revoked is True

    def test_revoke_all_counts_active_records(self, authority, store, user):
        authority.issue_refresh_token(user)
        authority.issue_refresh_token(user)
        secret, _ = authority.issue_refresh_token(user)
        authority.revoke(secret)

        assert authority.revoke_all(user.id) == 2
        assert authority.revoke_all(user.id) == 0

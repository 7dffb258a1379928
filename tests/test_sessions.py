import datetime as dt

import pytest
from jwt import InvalidTokenError, decode, encode

from portal.data.records import User
from portal.services.credentials import generate_verification_code, hash_password, verify_password
from portal.services.sessions import decode_session, issue_session, verify_bearer_token

SECRET = "test-secret"


class TestSessions:
    def test_claims(self):
        now = dt.datetime(2025, 1, 1, tzinfo=dt.timezone.utc)
        token = issue_session(User(id="u1", discord_id="42"), SECRET, dt.timedelta(hours=24), now=now)
        # Fixed issue time is in the past, so skip expiry here
        claims = decode(token, SECRET, algorithms=["HS256"], options={"verify_exp": False})
        assert claims["userId"] == "u1"
        assert claims["sub"] == "u1"
        assert claims["discordId"] == "42"
        assert claims["exp"] - claims["iat"] == 24 * 3600

    def test_discord_claim_omitted_without_discord(self):
        token = issue_session(User(id="u2"), SECRET, dt.timedelta(hours=1))
        assert "discordId" not in decode_session(token, SECRET)

    def test_missing_user_claim_rejected(self):
        token = encode({"sub": "x"}, SECRET, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            decode_session(token, SECRET)

    def test_bearer_prefix_required(self):
        token = issue_session(User(id="u3"), SECRET, dt.timedelta(hours=1))
        assert verify_bearer_token(f"Bearer {token}", SECRET)["userId"] == "u3"
        with pytest.raises(InvalidTokenError):
            verify_bearer_token(token, SECRET)


class TestCredentials:
    def test_password_hash_roundtrip(self):
        hashed = hash_password("s3cret-pass")
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("other", hashed)
        assert not verify_password("s3cret-pass", None)
        assert not verify_password("s3cret-pass", "not-a-bcrypt-hash")

    def test_verification_code_shape(self):
        code = generate_verification_code()
        assert len(code) == 9 and code[4] == "-"
        assert not set(code.replace("-", "")) & set("01IO")

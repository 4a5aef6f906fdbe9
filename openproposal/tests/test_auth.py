from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
import pytest

from openproposal.auth import Identity, _extract_token, decode_token, issue_token
from openproposal.config import Settings
from openproposal.errors import AuthenticationRequired
from openproposal.roles import Role

SETTINGS = Settings(jwt_secret="test-secret")


def test_round_trip_keeps_roles():
    identity = Identity(id=4, email="rev@uni.edu", name="Rev", roles=frozenset({Role.REVIEWER}))
    assert decode_token(issue_token(identity, SETTINGS), SETTINGS) == identity


def test_unknown_roles_dropped():
    token = jwt.encode({"id": 1, "email": "a@b.c", "roles": ["REVIEWER", "ROOT"]}, "test-secret")
    assert decode_token(token, SETTINGS).roles == {Role.REVIEWER}


def test_expired():
    identity = Identity(id=1, email="a@b.c")
    token = issue_token(identity, SETTINGS, now=datetime.now(UTC) - timedelta(days=2))
    with pytest.raises(AuthenticationRequired, match="expired"):
        decode_token(token, SETTINGS)


def test_wrong_secret():
    token = issue_token(Identity(id=1, email="a@b.c"), Settings(jwt_secret="other"))
    with pytest.raises(AuthenticationRequired):
        decode_token(token, SETTINGS)


def test_missing_claims():
    token = jwt.encode({"email": "a@b.c"}, "test-secret")
    with pytest.raises(AuthenticationRequired, match="identity"):
        decode_token(token, SETTINGS)


class TestExtractToken:
    def test_bearer_header(self):
        assert _extract_token("Bearer abc", None) == "abc"
        assert _extract_token("bearer abc", "cookie") == "abc"

    def test_cookie_fallback(self):
        assert _extract_token(None, "cookie") == "cookie"
        assert _extract_token("Basic xyz", "cookie") == "cookie"

    def test_nothing(self):
        assert _extract_token(None, None) is None
        assert _extract_token("Bearer ", "") is None

"""Tests for access tokens."""

import pytest
from jose import jwt

from agent_desk.config import AuthConfig
from agent_desk.core.auth import TokenService
from agent_desk.errors import AuthenticationError


def test_issue_and_verify():
    service = TokenService(AuthConfig(secret_key="k"))
    claims = service.verify(service.issue(7, role="admin"))
    assert claims.tenant_id == 7
    assert claims.is_admin


def test_wrong_secret_rejected():
    token = TokenService(AuthConfig(secret_key="a")).issue(1)
    with pytest.raises(AuthenticationError):
        TokenService(AuthConfig(secret_key="b")).verify(token)


def test_expired_token_rejected():
    service = TokenService(AuthConfig(secret_key="k", token_ttl_seconds=-10))
    with pytest.raises(AuthenticationError):
        service.verify(service.issue(1))


def test_foreign_issuer_rejected():
    token = jwt.encode({"sub": "1", "iss": "someone-else", "exp": 9999999999}, "k",
                       algorithm="HS256")
    with pytest.raises(AuthenticationError):
        TokenService(AuthConfig(secret_key="k")).verify(token)


@pytest.mark.parametrize("token", ["", "not-a-jwt"])
def test_malformed_token_rejected(token):
    with pytest.raises(AuthenticationError):
        TokenService(AuthConfig(secret_key="k")).verify(token)

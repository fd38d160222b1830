from __future__ import annotations

import time

import pytest

from apps.bus.app import auth
from apps.bus.app.errors import Unauthorized
from apps.bus.app.schemas import Admin


def _admin(**kw) -> Admin:
    base = {"id": "a1", "name": "Root", "email": "root@busticket.com", "password_hash": auth.hash_password("Root@123")}
    base.update(kw)
    return Admin(**base)


def test_password_hash_roundtrip_and_salt():
    h1 = auth.hash_password("Secret@1")
    h2 = auth.hash_password("Secret@1")
    assert h1 != h2
    assert h1.startswith("$2b$")
    assert auth.verify_password("Secret@1", h1)
    assert not auth.verify_password("Secret@2", h1)
    assert not auth.verify_password("Secret@1", "garbage")
    assert not auth.verify_password("Secret@1", "")


def test_token_expiry_and_secret():
    admin = _admin()
    issued_at = time.time() - 8 * 86400
    old = auth.issue_token(admin, secret="s1", expires_days=7, now=issued_at)
    with pytest.raises(Unauthorized):
        auth.decode_token(old, secret="s1")

    fresh = auth.issue_token(admin, secret="s1", expires_days=7)
    assert auth.decode_token(fresh, secret="s1")["sub"] == "a1"
    with pytest.raises(Unauthorized):
        auth.decode_token(fresh, secret="s2")


@pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer ", "Basic dXNlcg=="])
def test_bearer_header_required(header):
    with pytest.raises(Unauthorized):
        auth.bearer_token(header)


def test_authenticate_checks_admin_state(svc):
    active = svc.storage.create_admin(_admin())
    token = auth.issue_token(active)
    assert auth.authenticate(svc.storage, f"Bearer {token}").id == "a1"

    disabled = svc.storage.create_admin(_admin(id="a2", email="off@busticket.com", is_active=False))
    with pytest.raises(Unauthorized):
        auth.authenticate(svc.storage, f"Bearer {auth.issue_token(disabled)}")

    ghost = _admin(id="ghost", email="ghost@busticket.com")
    with pytest.raises(Unauthorized):
        auth.authenticate(svc.storage, f"Bearer {auth.issue_token(ghost)}")


def test_login(svc):
    svc.storage.create_admin(_admin())
    admin, token = auth.login(svc.storage, "ROOT@busticket.com", "Root@123")
    assert admin.id == "a1"
    assert auth.decode_token(token)["role"] == "admin"
    with pytest.raises(Unauthorized):
        auth.login(svc.storage, "root@busticket.com", "nope-nope")

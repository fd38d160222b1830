"""
Admin authentication: bcrypt password hashes (passlib) and HS256 bearer
tokens built on the standard library (no external JWT dependency).
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Optional, Tuple

from passlib.context import CryptContext

from . import settings
from .errors import DuplicateKeyError, Forbidden, Unauthorized, ValidationError
from .schemas import Admin, AdminCreateIn
from .storage import StorageGateway

log = logging.getLogger("busline.auth")

ADMIN_ROLES = ("admin", "superadmin")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, encoded: str) -> bool:
    try:
        return pwd_context.verify(password, encoded)
    except (ValueError, TypeError):
        # unknown or malformed hash
        return False


def _sign(secret: str, msg: bytes) -> str:
    return _b64url(hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest())


def issue_token(admin: Admin, secret: Optional[str] = None, expires_days: Optional[int] = None, now: Optional[float] = None) -> str:
    """Minimal HS256 JWT carrying the admin id and role."""
    secret = secret if secret is not None else settings.JWT_SECRET
    days = expires_days if expires_days is not None else settings.JWT_EXPIRES_DAYS
    iat = int(now if now is not None else time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {"sub": admin.id, "role": admin.role, "iat": iat, "exp": iat + days * 86400}
    h = _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    p = _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{h}.{p}.{_sign(secret, f'{h}.{p}'.encode('utf-8'))}"


def decode_token(token: str, secret: Optional[str] = None, now: Optional[float] = None) -> dict[str, Any]:
    secret = secret if secret is not None else settings.JWT_SECRET
    try:
        h, p, s = token.split(".")
        header = json.loads(_b64url_decode(h))
        payload = json.loads(_b64url_decode(p))
    except (ValueError, TypeError):
        raise Unauthorized("Not authorized, token failed")
    if not isinstance(header, dict) or not isinstance(payload, dict) or header.get("alg") != "HS256":
        raise Unauthorized("Not authorized, token failed")
    if not hmac.compare_digest(_sign(secret, f"{h}.{p}".encode("utf-8")), s):
        raise Unauthorized("Not authorized, token failed")
    exp = payload.get("exp")
    if not isinstance(exp, int) or exp <= int(now if now is not None else time.time()):
        raise Unauthorized("Not authorized, token expired")
    return payload


def bearer_token(authorization: Optional[str]) -> str:
    raw = (authorization or "").strip()
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Not authorized, no token")
    return token.strip()


def authenticate(storage: StorageGateway, authorization: Optional[str]) -> Admin:
    payload = decode_token(bearer_token(authorization))
    admin = storage.get_admin(str(payload.get("sub") or ""))
    if not admin or not admin.is_active:
        raise Unauthorized("Not authorized, admin not found")
    if admin.role not in ADMIN_ROLES:
        raise Forbidden()
    return admin


def login(storage: StorageGateway, email: str, password: str) -> Tuple[Admin, str]:
    admin = storage.find_admin_by_email(email)
    if not admin or not admin.is_active or not verify_password(password, admin.password_hash):
        log.info("admin login failed", extra={"email": email})
        raise Unauthorized("Invalid email or password")
    log.info("admin login", extra={"admin_id": admin.id})
    return admin, issue_token(admin)


def create_admin(storage: StorageGateway, body: AdminCreateIn) -> Admin:
    admin = Admin(
        id=str(uuid.uuid4()),
        name=body.name.strip(),
        email=body.email,
        password_hash=hash_password(body.password),
        role=body.role,
    )
    try:
        created = storage.create_admin(admin)
    except DuplicateKeyError:
        raise ValidationError("Admin with this email already exists")
    log.info("admin created", extra={"admin_id": created.id, "role": created.role})
    return created

# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication primitives: password hashing, tokens, CSRF, signed visitor ids, cookies."""

import base64
import binascii
import hashlib
import hmac
import secrets
import uuid
from functools import lru_cache

from fastapi import Response
from passlib.context import CryptContext

from abi_server.config import settings

SESSION_COOKIE = "abi_session"
CSRF_COOKIE = "abi_csrf"
VISITOR_COOKIE = "abi_visitor"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str | None) -> bool:
    """Verify a password against its hash.

    A missing or malformed verifier still costs one bcrypt round trip, so the
    "no such user" path is not measurably faster than a wrong password.
    """
    if not hashed:
        pwd_context.verify(plain, _dummy_hash())
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return pwd_context.hash(secrets.token_hex(16))


def random_token(nbytes: int = 32) -> str:
    """URL-safe random token with ``nbytes`` of entropy (session tokens use 32)."""
    return secrets.token_urlsafe(nbytes)


def constant_time_equals(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


# CSRF: double-submit cookie


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def requires_csrf(method: str) -> bool:
    return method.upper() not in SAFE_METHODS


def validate_csrf(header_token: str | None, cookie_token: str | None) -> bool:
    """Header value must equal the CSRF cookie value."""
    return constant_time_equals(header_token, cookie_token)


# HMAC signing with versioned keys


def _signing_keys() -> list[tuple[str, bytes]]:
    """Parse VISITOR_SIGNING_KEYS ("v2:secret,v1:old-secret"). The first key signs."""
    keys = []
    for item in settings.visitor_signing_keys.split(","):
        item = item.strip()
        if not item:
            continue
        version, sep, secret = item.partition(":")
        if not sep or not version or not secret:
            raise ValueError("visitor_signing_keys entries must look like 'version:secret'")
        keys.append((version, secret.encode()))
    if not keys:
        raise ValueError("visitor_signing_keys must contain at least one key")
    return keys


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _signature(secret: bytes, payload: bytes) -> bytes:
    return hmac.new(secret, payload, hashlib.sha256).digest()


def hmac_sign(payload: str, key_version: str | None = None) -> str:
    """Sign ``payload`` as ``b64url(version:payload).b64url(sig)``."""
    keys = _signing_keys()
    if key_version is None:
        version, secret = keys[0]
    else:
        matches = [k for k in keys if k[0] == key_version]
        if not matches:
            raise ValueError(f"Unknown signing key version: {key_version}")
        version, secret = matches[0]
    body = f"{version}:{payload}".encode()
    return f"{_b64encode(body)}.{_b64encode(_signature(secret, body))}"


def hmac_verify(blob: str | None) -> str | None:
    """Return the signed payload, or None if the blob is malformed or no known key verifies it."""
    if not blob or "." not in blob:
        return None
    encoded_body, _, encoded_sig = blob.rpartition(".")
    try:
        body = _b64decode(encoded_body)
        sig = _b64decode(encoded_sig)
    except (binascii.Error, ValueError):
        return None
    valid = False
    for _version, secret in _signing_keys():
        # Check every key so the match position is not observable
        if hmac.compare_digest(_signature(secret, body), sig):
            valid = True
    if not valid:
        return None
    try:
        text = body.decode()
    except UnicodeDecodeError:
        return None
    _version, sep, payload = text.partition(":")
    if not sep or not payload:
        return None
    return payload


def generate_visitor_id() -> str:
    return str(uuid.uuid4())


def sign_visitor_id(visitor_id: str) -> str:
    return hmac_sign(visitor_id)


def verify_visitor_id(signed: str | None) -> str | None:
    return hmac_verify(signed)


# Cookies


def set_session_cookies(response: Response, session_token: str, csrf_token: str, visitor: str) -> None:
    """Session and visitor are HttpOnly; the CSRF cookie must be readable by the client."""
    secure = settings.production
    response.set_cookie(
        SESSION_COOKIE,
        session_token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        CSRF_COOKIE,
        csrf_token,
        max_age=settings.session_ttl_seconds,
        httponly=False,
        secure=secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        VISITOR_COOKIE,
        visitor,
        max_age=settings.visitor_ttl_seconds,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )


def clear_session_cookies(response: Response) -> None:
    """Expire session and CSRF cookies. The visitor cookie is kept."""
    secure = settings.production
    response.set_cookie(SESSION_COOKIE, "", max_age=0, httponly=True, secure=secure, samesite="lax", path="/")
    response.set_cookie(CSRF_COOKIE, "", max_age=0, httponly=False, secure=secure, samesite="lax", path="/")

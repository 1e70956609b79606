import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import HTTPException, status

_HEADER = {"alg": "HS256", "typ": "JWT"}


class JwtError(Exception):
    pass


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(signing_input: bytes, secret: str) -> str:
    return _b64url_encode(hmac.new(secret.encode(), signing_input, hashlib.sha256).digest())


def issue_jwt(claims: dict[str, Any], secret: str, expires_in_s: int = 3600) -> str:
    """Mint an HS256 token; used by tests and local tooling, the storefront mints its own."""
    now = int(time.time())
    body = {**claims, "iat": now, "exp": now + expires_in_s}

    encoded_header = _b64url_encode(json.dumps(_HEADER, separators=(",", ":")).encode())
    encoded_body = _b64url_encode(json.dumps(body, separators=(",", ":")).encode())
    signature = _sign(f"{encoded_header}.{encoded_body}".encode(), secret)
    return f"{encoded_header}.{encoded_body}.{signature}"


def decode_jwt(token: str, secret: str) -> dict[str, Any]:
    try:
        encoded_header, encoded_body, encoded_signature = token.split(".")
    except ValueError as exc:
        raise JwtError("Malformed JWT") from exc

    expected = _sign(f"{encoded_header}.{encoded_body}".encode(), secret)
    if not hmac.compare_digest(expected, encoded_signature):
        raise JwtError("Invalid JWT signature")

    try:
        header = json.loads(_b64url_decode(encoded_header))
        claims = json.loads(_b64url_decode(encoded_body))
    except ValueError as exc:
        raise JwtError("Malformed JWT") from exc
    if header.get("alg") != "HS256" or not isinstance(claims, dict):
        raise JwtError("Unsupported JWT")

    exp = claims.get("exp")
    if not isinstance(exp, int) or exp < int(time.time()):
        raise JwtError("Expired JWT")
    return claims


def jwt_http_exception(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )

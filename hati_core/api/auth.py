"""登录口令校验与会话令牌。

令牌格式：`<base64url(JSON 载荷)>.<base64url(HMAC-SHA256 签名)>`，
载荷包含过期时间 exp（Unix 秒）与随机 nonce。服务端无状态，每个请求单独校验。
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from hati_core.domain.exceptions import AuthError


@dataclass
class SessionToken:
    token: str
    expires_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def check_password(candidate: str, expected: str) -> None:
    if not candidate or not hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError(code="INVALID_PASSWORD", message="Invalid password")


def issue_token(secret: str, ttl_seconds: int, now: Optional[float] = None) -> SessionToken:
    expires_at = int((now if now is not None else time.time()) + ttl_seconds)
    payload = {"exp": expires_at, "nonce": secrets.token_hex(8)}
    body = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return SessionToken(token=f"{body}.{_sign(secret, body)}", expires_at=expires_at)


def verify_token(token: str, secret: str, now: Optional[float] = None) -> dict:
    """校验签名与有效期，返回载荷。"""

    try:
        body, signature = token.split(".", 1)
    except ValueError:
        raise AuthError(code="INVALID_TOKEN", message="Malformed session token")
    if not hmac.compare_digest(signature, _sign(secret, body)):
        raise AuthError(code="INVALID_TOKEN", message="Invalid session token")
    try:
        payload = json.loads(_b64decode(body))
        expires_at = int(payload["exp"])
    except (ValueError, KeyError, TypeError):
        raise AuthError(code="INVALID_TOKEN", message="Malformed session token")
    if expires_at <= (now if now is not None else time.time()):
        raise AuthError(code="TOKEN_EXPIRED", message="Session expired, please log in again")
    return payload


async def require_session(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    """FastAPI 依赖：要求请求携带有效的 Bearer 令牌。"""

    cfg = request.app.state.settings
    if not cfg.auth_enabled:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError(code="MISSING_TOKEN", message="Authorization required")
    verify_token(authorization[7:].strip(), cfg.session_secret)

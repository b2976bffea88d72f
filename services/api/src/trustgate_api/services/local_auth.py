"""本地账号认证服务。"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import jwt

from trustgate_api.core.config import get_settings
from trustgate_api.models.enums import AuthAssurance
from trustgate_api.models.user import User


def _pbkdf2_hash(secret: str, iterations: int) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, iterations)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${iterations}${salt_b64}${digest_b64}"


def _pbkdf2_verify(secret: str, encoded: str) -> bool:
    try:
        algorithm, iterations_text, salt_b64, expected_digest_b64 = encoded.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected_digest = base64.b64decode(expected_digest_b64.encode("ascii"))
    except (ValueError, TypeError, binascii.Error):
        return False

    actual_digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual_digest, expected_digest)


def hash_password(password: str) -> str:
    """使用 PBKDF2-SHA256 生成口令哈希。"""
    return _pbkdf2_hash(password, get_settings().auth_password_hash_iterations)


def verify_password(password: str, password_hash: str) -> bool:
    """校验口令是否匹配。"""
    return _pbkdf2_verify(password, password_hash)


def hash_backup_code(code: str) -> str:
    """备用码按加盐单向哈希保存，生成后无法再取回明文。"""
    return _pbkdf2_hash(code, get_settings().mfa_backup_code_hash_iterations)


def verify_backup_code(code: str, code_hash: str) -> bool:
    return _pbkdf2_verify(code, code_hash)


def issue_access_token(user: User, *, assurance: AuthAssurance | None = None) -> tuple[str, int, datetime, str]:
    """签发访问令牌。

    assurance 为 aal1 时签发短时效的待二次验证令牌，仅能用于验证接口。
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    ttl = settings.auth_access_token_ttl_seconds
    if assurance == AuthAssurance.AAL1:
        ttl = settings.auth_mfa_pending_token_ttl_seconds
    expires_at = now + timedelta(seconds=ttl)
    issuer_for_decode = settings.auth_jwt_issuer or settings.auth_local_issuer
    jti = str(uuid4())

    claims: dict[str, object] = {
        "sub": user.external_subject,
        "email": user.email,
        "name": user.display_name,
        "provider": user.auth_provider,
        "tg_uid": str(user.id),
        "iss": issuer_for_decode,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": jti,
    }
    if assurance is not None:
        claims["aal"] = str(assurance)
    if settings.auth_jwt_audience:
        claims["aud"] = settings.auth_jwt_audience

    token = jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_algorithms[0])
    return token, int(expires_at.timestamp()), expires_at, jti

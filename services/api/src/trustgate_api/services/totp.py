"""动态口令与备用码基础工具。"""

import base64
import hashlib
import hmac
import secrets
import string
import struct
import time
from urllib.parse import quote

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_totp_secret(bytes_len: int = 20) -> str:
    raw = secrets.token_bytes(bytes_len)
    return base64.b32encode(raw).decode("utf-8").strip("=").upper()


def build_otpauth_uri(
    *,
    secret: str,
    account_name: str,
    issuer: str,
    period: int = 30,
    digits: int = 6,
) -> str:
    """生成供二维码渲染的 otpauth 地址。"""
    label = f"{issuer}:{account_name}"
    return (
        "otpauth://totp/"
        f"{quote(label)}?secret={quote(secret)}&issuer={quote(issuer)}"
        f"&period={period}&digits={digits}"
    )


def normalize_totp_code(code: str | None, *, digits: int = 6) -> str | None:
    """去掉空白后必须恰好为指定位数的十进制数字。"""
    if not code:
        return None
    cleaned = "".join(code.split())
    if len(cleaned) != digits or not cleaned.isdigit():
        return None
    return cleaned


def totp_code(secret: str, *, at: float | None = None, period: int = 30, digits: int = 6) -> str:
    """计算指定时刻的动态口令。"""
    at = time.time() if at is None else at
    return _totp_at(secret, int(at // period), digits=digits)


def verify_totp(
    *,
    code: str,
    secret: str,
    period: int = 30,
    digits: int = 6,
    window: int = 1,
    now: float | None = None,
) -> bool:
    if not code or not secret:
        return False
    cleaned = normalize_totp_code(code, digits=digits)
    if cleaned is None:
        return False
    now = time.time() if now is None else now
    counter = int(now // period)
    for offset in range(-window, window + 1):
        if hmac.compare_digest(_totp_at(secret, counter + offset, digits=digits), cleaned):
            return True
    return False


def _totp_at(secret: str, counter: int, *, digits: int) -> str:
    key = base64.b32decode(_normalize_base32(secret))
    msg = struct.pack(">Q", counter)
    digest = hmac.new(key, msg, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (10**digits)
    return str(code).zfill(digits)


def _normalize_base32(secret: str) -> bytes:
    cleaned = secret.strip().replace(" ", "").upper()
    padding = "=" * ((8 - len(cleaned) % 8) % 8)
    return (cleaned + padding).encode("utf-8")


def generate_backup_codes(count: int = 10, length: int = 8) -> list[str]:
    """生成一批大写字母数字备用码，批内不重复。"""
    codes: list[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


def normalize_backup_code(code: str | None, *, length: int = 8) -> str | None:
    """兼容用户输入的空格、连字符与小写。"""
    if not code:
        return None
    cleaned = "".join(ch for ch in code if ch not in " -\t").upper()
    if len(cleaned) != length or any(ch not in BACKUP_CODE_ALPHABET for ch in cleaned):
        return None
    return cleaned

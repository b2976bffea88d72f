"""路由模块导出集合。"""

from . import auth, health, mfa, moderation, trust

__all__ = [
    "auth",
    "health",
    "mfa",
    "moderation",
    "trust",
]

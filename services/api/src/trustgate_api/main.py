"""FastAPI 应用入口点。"""

from fastapi import FastAPI

from trustgate_api.core.config import get_settings
from trustgate_api.core.logging import setup_logging
from trustgate_api.db.session import SessionLocal
from trustgate_api.dependencies import build_trust_runtime
from trustgate_api.exceptions import register_exception_handlers
from trustgate_api.middlewares import register_middlewares
from trustgate_api.api.router import api_router

settings = get_settings()


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    setup_logging()
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        description=(
            "信任门禁服务：封禁、警告确认与两步验证。\n\n"
            "所有业务接口统一返回：`{request_id, data, meta}`。\n"
            "通过访问令牌进行认证；待二次验证的令牌只能访问二次验证与门禁判定接口。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪探针。"},
            {"name": "auth", "description": "本地账号注册、登录与登出。"},
            {"name": "trust", "description": "门禁判定、封禁状态与警告确认。"},
            {"name": "mfa", "description": "两步验证绑定、二次验证与锁定查询。"},
            {"name": "moderation", "description": "社区管理：封禁、解封与警告。"},
        ],
    )
    app.state.trust_runtime = build_trust_runtime(SessionLocal, settings=settings)

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()

import os

# 先写入测试配置，再导入应用模块（部分模块在导入时读取配置）。
os.environ.setdefault("TG_DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("TG_AUTH_JWT_SECRET", "trustgate-test-secret-key-at-least-32-bytes")
os.environ.setdefault("TG_AUTH_PASSWORD_HASH_ITERATIONS", "1000")
os.environ.setdefault("TG_MFA_BACKUP_CODE_HASH_ITERATIONS", "1000")

from collections.abc import Generator
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker

import trustgate_api.models  # noqa: F401
from trustgate_api.core.config import get_settings
from trustgate_api.models.base import Base
from trustgate_api.models.enums import AppRole, UserStatus
from trustgate_api.models.user import User, UserRole
from trustgate_api.services.trust_events import TrustEventBus
from trustgate_api.services.trust_store import TrustStateStore


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_type_, _compiler, **_kwargs):
    return "JSON"


@compiles(INET, "sqlite")
def _compile_inet_sqlite(_type_, _compiler, **_kwargs):
    return "TEXT"


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine(tmp_path):
    # 文件库：门禁并发读取时每个线程使用独立连接。
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'trustgate.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


@pytest.fixture
def event_bus() -> TrustEventBus:
    return TrustEventBus()


@pytest.fixture
def store(session_factory, event_bus) -> TrustStateStore:
    return TrustStateStore(session_factory, event_bus)


@pytest.fixture
def make_user(session_factory):
    """直接落库创建用户，可选授予平台角色。"""

    def _make_user(email: str | None = None, *, roles: tuple[AppRole, ...] = ()) -> User:
        email = email or f"user-{uuid4().hex[:8]}@example.com"
        with session_factory() as db:
            user = User(
                id=uuid4(),
                email=email,
                display_name=email.split("@")[0],
                status=UserStatus.ACTIVE,
                auth_provider="local",
                external_subject=email,
            )
            db.add(user)
            for role in roles:
                db.add(
                    UserRole(
                        id=uuid4(),
                        user_id=user.id,
                        role=role,
                        created_at=datetime.now(timezone.utc),
                    )
                )
            db.commit()
            return user

    return _make_user

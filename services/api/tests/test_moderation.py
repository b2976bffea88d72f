from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from trustgate_api.core.errors import BanNotFound, InvalidModerationRequest, ModerationForbidden, UserNotFound
from trustgate_api.models.audit import AuditLog
from trustgate_api.models.enums import AppRole, WarningSeverity
from trustgate_api.services.audit import AuditContext
from trustgate_api.services.ban_policy import BanPolicyEvaluator
from trustgate_api.services.moderation import ModerationService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def moderation(store) -> ModerationService:
    return ModerationService(store)


@pytest.mark.parametrize("role", [AppRole.OWNER, AppRole.ADMIN, AppRole.MODERATOR])
def test_staff_roles_can_moderate(moderation, make_user, role):
    assert moderation.is_moderator(make_user(roles=(role,)).id)


def test_regular_user_cannot_moderate(moderation, make_user):
    actor = make_user(roles=(AppRole.USER,))
    target = make_user()

    with pytest.raises(ModerationForbidden):
        moderation.ban_user(actor_id=actor.id, user_id=target.id, reason="spam")
    with pytest.raises(ModerationForbidden):
        moderation.warn_user(actor_id=actor.id, user_id=target.id, reason="spam")
    with pytest.raises(ModerationForbidden):
        moderation.list_bans(actor_id=actor.id)


def test_moderator_cannot_target_self(moderation, make_user):
    actor = make_user(roles=(AppRole.MODERATOR,))

    with pytest.raises(ModerationForbidden) as exc:
        moderation.ban_user(actor_id=actor.id, user_id=actor.id, reason="spam")
    assert "自己" in exc.value.message


def test_ban_and_lift_cycle(moderation, make_user, store):
    actor = make_user(roles=(AppRole.MODERATOR,))
    target = make_user()
    evaluator = BanPolicyEvaluator(store)

    record = moderation.ban_user(
        actor_id=actor.id,
        user_id=target.id,
        reason="harassment",
        expires_at=NOW + timedelta(days=7),
        now=NOW,
    )
    assert record.banned_by == actor.id
    assert evaluator.evaluate(target.id, now=NOW + timedelta(days=1)).is_banned

    assert moderation.lift_ban(actor_id=actor.id, user_id=target.id, now=NOW + timedelta(days=2)) == 1
    assert not evaluator.evaluate(target.id, now=NOW + timedelta(days=2)).is_banned

    with pytest.raises(BanNotFound):
        moderation.lift_ban(actor_id=actor.id, user_id=target.id)

    history = moderation.list_bans(actor_id=actor.id)
    assert [item.id for item in history] == [record.id]


def test_ban_expiry_must_be_in_future(moderation, make_user):
    actor = make_user(roles=(AppRole.ADMIN,))
    target = make_user()

    with pytest.raises(InvalidModerationRequest):
        moderation.ban_user(
            actor_id=actor.id, user_id=target.id, reason="spam", expires_at=NOW - timedelta(minutes=1), now=NOW
        )
    # 无时区的到期时间按 UTC 处理。
    with pytest.raises(InvalidModerationRequest):
        moderation.ban_user(actor_id=actor.id, user_id=target.id, reason="spam", expires_at=NOW.replace(tzinfo=None), now=NOW)


def test_warn_user_counts_and_audits(moderation, make_user, session_factory):
    actor = make_user(roles=(AppRole.MODERATOR,))
    target = make_user()
    audit = AuditContext(ip="127.0.0.1", user_agent="pytest")

    moderation.warn_user(
        actor_id=actor.id, user_id=target.id, reason="spam", severity=WarningSeverity.HIGH, now=NOW, audit=audit
    )
    moderation.warn_user(actor_id=actor.id, user_id=target.id, reason="again", now=NOW + timedelta(minutes=1))

    assert moderation.warning_count(actor_id=actor.id, user_id=target.id) == 2
    with session_factory() as db:
        rows = db.execute(select(AuditLog.action, AuditLog.user_agent)).all()
    assert sorted(rows, key=lambda row: row.user_agent or "") == [
        ("warning.create", None),
        ("warning.create", "pytest"),
    ]


def test_unknown_actor_is_not_moderator(moderation):
    assert not moderation.is_moderator(uuid4())


def test_admin_assigns_role_once(moderation, make_user, session_factory):
    admin = make_user(roles=(AppRole.ADMIN,))
    target = make_user()

    assert moderation.assign_role(actor_id=admin.id, user_id=target.id, role=AppRole.MODERATOR, now=NOW)
    assert moderation.is_moderator(target.id)
    # 重复授予不写入新记录。
    assert not moderation.assign_role(actor_id=admin.id, user_id=target.id, role=AppRole.MODERATOR, now=NOW)

    with session_factory() as db:
        actions = db.execute(select(AuditLog.action).where(AuditLog.resource_id == str(target.id))).scalars().all()
    assert actions == ["role.assign"]


def test_only_owner_and_admin_assign_roles(moderation, make_user):
    moderator = make_user(roles=(AppRole.MODERATOR,))
    admin = make_user(roles=(AppRole.ADMIN,))
    owner = make_user(roles=(AppRole.OWNER,))
    target = make_user()

    with pytest.raises(ModerationForbidden):
        moderation.assign_role(actor_id=moderator.id, user_id=target.id, role=AppRole.MODERATOR)
    with pytest.raises(ModerationForbidden):
        moderation.assign_role(actor_id=admin.id, user_id=target.id, role=AppRole.OWNER)
    with pytest.raises(ModerationForbidden):
        moderation.assign_role(actor_id=admin.id, user_id=admin.id, role=AppRole.MODERATOR)

    assert moderation.assign_role(actor_id=owner.id, user_id=target.id, role=AppRole.OWNER)
    assert moderation.is_moderator(target.id)


def test_assign_role_to_unknown_user(moderation, make_user):
    admin = make_user(roles=(AppRole.ADMIN,))

    with pytest.raises(UserNotFound):
        moderation.assign_role(actor_id=admin.id, user_id=uuid4(), role=AppRole.MODERATOR)

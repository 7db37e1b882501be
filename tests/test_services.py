"""
Tests for the task ledger, notification store and sink, and the
instruction store and matcher.
"""

from datetime import timedelta

import pytest

from app.agent.instruction_matcher import match_instructions
from app.db import NotificationSeverity, NotificationType, Task, TaskStatus, TriggerType
from app.services.instruction_service import InstructionService
from app.services.notification_service import NotificationService, NotificationSink
from app.services.task_service import TaskService, TaskTransitionError, check_transition

from tests.conftest import NOW


# ============ Task transitions ============

@pytest.mark.parametrize("current,target", [
    (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
    (TaskStatus.PENDING, TaskStatus.WAITING_FOR_RESPONSE),
    (TaskStatus.PENDING, TaskStatus.COMPLETED),
    (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
    (TaskStatus.WAITING_FOR_RESPONSE, TaskStatus.CANCELLED),
])
def test_forward_transitions_are_allowed(current, target):
    check_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (TaskStatus.IN_PROGRESS, TaskStatus.PENDING),
    (TaskStatus.WAITING_FOR_RESPONSE, TaskStatus.IN_PROGRESS),
    (TaskStatus.COMPLETED, TaskStatus.FAILED),
    (TaskStatus.FAILED, TaskStatus.CANCELLED),
    (TaskStatus.CANCELLED, TaskStatus.PENDING),
])
def test_backward_or_terminal_transitions_are_rejected(current, target):
    with pytest.raises(TaskTransitionError):
        check_transition(current, target)


@pytest.mark.asyncio
async def test_update_status_stamps_times(db_session, user):
    service = TaskService(db_session)
    task = await service.create_task(user.id, "Send proposal")

    task = await service.update_status(user.id, task.id, TaskStatus.IN_PROGRESS, now=NOW)
    assert task.started_at == NOW
    assert task.completed_at is None

    later = NOW + timedelta(hours=2)
    task = await service.update_status(user.id, task.id, TaskStatus.COMPLETED, result="Sent", now=later)
    assert task.completed_at == later
    assert task.result == "Sent"


@pytest.mark.asyncio
async def test_terminal_transitions_notify(db_session, user):
    service = TaskService(db_session)
    done = await service.create_task(user.id, "Send proposal")
    dropped = await service.create_task(user.id, "Book venue")
    cancelled = await service.create_task(user.id, "Old idea")

    await service.update_status(user.id, done.id, TaskStatus.IN_PROGRESS, now=NOW)
    await service.update_status(user.id, done.id, TaskStatus.COMPLETED, result="Sent", now=NOW)
    await service.update_status(user.id, dropped.id, TaskStatus.FAILED, error="No reply", now=NOW)
    await service.update_status(user.id, cancelled.id, TaskStatus.CANCELLED, now=NOW)

    notes = await NotificationService(db_session).get_all(user.id)
    by_type = {n.type: n for n in notes}
    assert len(notes) == 2
    assert by_type["task_completed"].message == "Send proposal: Sent"
    assert by_type["task_failed"].message == "Book venue: No reply"
    assert by_type["task_failed"].severity == "error"


@pytest.mark.asyncio
async def test_tasks_are_scoped_to_their_owner(db_session, user):
    from app.services import create_user
    other = await create_user(db_session, "other@firm.com")
    task = await TaskService(db_session).create_task(user.id, "Private")

    with pytest.raises(LookupError):
        await TaskService(db_session).update_status(other.id, task.id, TaskStatus.COMPLETED)


@pytest.mark.asyncio
async def test_related_tasks_match_address_or_name(db_session, user):
    service = TaskService(db_session)
    by_address = await service.create_task(user.id, "Schedule call", "Waiting on jane@x.com")
    by_name = await service.create_task(user.id, "Follow up with Jane Doe")
    closed = await service.create_task(user.id, "Old thread with jane@x.com")
    await service.update_status(user.id, closed.id, TaskStatus.COMPLETED)
    await service.create_task(user.id, "Unrelated")

    related = await service.find_related_open_tasks(user.id, address="jane@x.com", name="Jane Doe")

    assert {t.id for t in related} == {by_address.id, by_name.id}
    assert await service.find_related_open_tasks(user.id, address="", name="") == []


@pytest.mark.asyncio
async def test_sweep_fails_stale_pending_tasks_only(db_session, user):
    service = TaskService(db_session)
    stale = Task(user_id=user.id, title="Stale", status=TaskStatus.PENDING.value, created_at=NOW - timedelta(hours=30))
    waiting = Task(
        user_id=user.id, title="Waiting", status=TaskStatus.WAITING_FOR_RESPONSE.value,
        created_at=NOW - timedelta(hours=30),
    )
    fresh = Task(user_id=user.id, title="Fresh", status=TaskStatus.PENDING.value, created_at=NOW - timedelta(hours=1))
    db_session.add_all([stale, waiting, fresh])
    await db_session.commit()

    swept = await service.sweep_stale(now=NOW, hours=24)
    db_session.expire_all()

    assert swept == 1
    statuses = {t.title: t.status for t in await service.list_tasks(user.id)}
    assert statuses == {"Stale": "failed", "Waiting": "waiting_for_response", "Fresh": "pending"}
    open_titles = {t.title for t in await service.list_open(user.id)}
    assert open_titles == {"Waiting", "Fresh"}


# ============ Notifications ============

@pytest.mark.asyncio
async def test_dedupe_key_debounces_inside_window(db_session, user):
    service = NotificationService(db_session)

    first = await service.create(
        user.id, NotificationType.ERROR, "AI Service Unavailable", "quota", NotificationSeverity.ERROR,
        dedupe_key="oracle:quota_exceeded", now=NOW,
    )
    repeat = await service.create(
        user.id, NotificationType.ERROR, "AI Service Unavailable", "quota", NotificationSeverity.ERROR,
        dedupe_key="oracle:quota_exceeded", now=NOW + timedelta(minutes=10),
    )
    after_window = await service.create(
        user.id, NotificationType.ERROR, "AI Service Unavailable", "quota", NotificationSeverity.ERROR,
        dedupe_key="oracle:quota_exceeded", now=NOW + timedelta(minutes=45),
    )

    assert first is not None
    assert repeat is None
    assert after_window is not None


@pytest.mark.asyncio
async def test_notifications_without_key_are_never_debounced(db_session, user):
    service = NotificationService(db_session)
    for _ in range(2):
        await service.create(user.id, NotificationType.NEW_CONTACT_CREATED, "New Contact Created", "Created Bob")

    assert len(await service.get_all(user.id)) == 2


@pytest.mark.asyncio
async def test_mark_read_and_unread_count(db_session, user):
    service = NotificationService(db_session)
    ids = []
    for i in range(3):
        n = await service.create(user.id, NotificationType.PROACTIVE_ACTION, f"Action {i}", "done")
        ids.append(n.id)

    assert await service.mark_as_read(user.id, ids[:1]) == 1
    assert await service.count_unread(user.id) == 2
    assert {n.id for n in await service.get_unread(user.id)} == set(ids[1:])

    assert await service.mark_all_as_read(user.id) == 2
    assert await service.count_unread(user.id) == 0


@pytest.mark.asyncio
async def test_delete_old_keeps_unread(db_session, user):
    service = NotificationService(db_session)
    old_read = await service.create(user.id, NotificationType.ERROR, "Old", "x", now=NOW - timedelta(days=40))
    await service.create(user.id, NotificationType.ERROR, "Old unread", "x", now=NOW - timedelta(days=40))
    await service.create(user.id, NotificationType.ERROR, "New", "x", now=NOW)
    await service.mark_as_read(user.id, [old_read.id])

    deleted = await service.delete_old(days=30, now=NOW)

    assert deleted == 1
    assert {n.title for n in await service.get_all(user.id)} == {"Old unread", "New"}


@pytest.mark.asyncio
async def test_sink_emit_returns_before_write(db_session, user, notifier):
    notifier.emit(user.id, NotificationType.PROACTIVE_ACTION, "Email Sent", "Sent hello")
    assert notifier.pending == 1

    await notifier.flush()

    assert notifier.pending == 0
    assert notifier.written == 1
    assert len(await NotificationService(db_session).get_all(user.id)) == 1


@pytest.mark.asyncio
async def test_back_to_back_emits_with_one_key_write_once(db_session, user, notifier):
    for _ in range(3):
        notifier.emit(
            user.id, NotificationType.HUBSPOT_TOKEN_EXPIRED, "HubSpot Connection Expired", "Reconnect HubSpot",
            NotificationSeverity.ERROR, dedupe_key="auth:hubspot",
        )
    notifier.emit(
        user.id, NotificationType.GOOGLE_TOKEN_EXPIRED, "Google Connection Expired", "Reconnect Google",
        NotificationSeverity.ERROR, dedupe_key="auth:google",
    )
    await notifier.flush()

    notes = await NotificationService(db_session).get_all(user.id)
    assert sorted(n.type for n in notes) == ["google_token_expired", "hubspot_token_expired"]
    assert notifier.written == 2
    assert notifier._key_locks == {}


class BrokenSession:
    async def __aenter__(self):
        raise RuntimeError("database is gone")

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_sink_swallows_write_failures(user):
    sink = NotificationSink(lambda: BrokenSession())

    sink.emit(user.id, NotificationType.ERROR, "Action Failed", "boom", NotificationSeverity.ERROR)
    await sink.flush()

    assert sink.failed == 1
    assert sink.written == 0


# ============ Instructions ============

@pytest.mark.asyncio
async def test_matcher_returns_active_instructions_newest_first(db_session, user):
    service = InstructionService(db_session)
    older = await service.create(user.id, "Log every new email", TriggerType.NEW_EMAIL)
    newer = await service.create(user.id, "Create contacts for new senders", TriggerType.NEW_EMAIL)
    disabled = await service.create(user.id, "Old rule", TriggerType.NEW_EMAIL)
    await service.create(user.id, "Prepare meeting notes", TriggerType.NEW_CALENDAR_EVENT)
    await service.set_active(user.id, disabled.id, False)

    matched = await match_instructions(db_session, user.id, TriggerType.NEW_EMAIL)

    ids = [i.id for i in matched]
    assert set(ids) == {older.id, newer.id}
    assert matched[0].created_at >= matched[1].created_at


@pytest.mark.asyncio
async def test_disabled_instruction_is_kept(db_session, user):
    service = InstructionService(db_session)
    instruction = await service.create(user.id, "  Email me a digest  ", TriggerType.NEW_EMAIL)
    assert instruction.instruction_text == "Email me a digest"

    await service.set_active(user.id, instruction.id, False)

    assert await service.list_for_user(user.id) == []
    kept = await service.list_for_user(user.id, active_only=False)
    assert [i.id for i in kept] == [instruction.id]
    assert kept[0].is_active is False


@pytest.mark.asyncio
async def test_other_users_instruction_cannot_be_toggled(db_session, user):
    from app.services import create_user
    other = await create_user(db_session, "other@firm.com")
    instruction = await InstructionService(db_session).create(user.id, "Rule", TriggerType.CRM_UPDATE)

    assert await InstructionService(db_session).set_active(other.id, instruction.id, False) is None

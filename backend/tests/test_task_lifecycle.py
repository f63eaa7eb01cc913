# tests/test_task_lifecycle.py - Status transitions, compare-and-set and task mutations
import logging
from collections import Counter
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    TransientIOError, ValidationError,
)
from models import Task, TaskLogAction, TaskPriority, TaskStatus, UserRole
from permissions import PermissionSet, Requester
from storage import BlobStorage, LocalBlobStorage
from store import RecordStore
from task_lifecycle import TaskLifecycleController, TRANSITIONS, allowed_transitions, validate_transition
from task_queries import TaskQueryService

from tests.conftest import create_task, create_user, reload_task, requester_for, task_logs

NO_ROLE_DEFAULTS = {UserRole.USER: ()}


def offline_controller():
    """Controller over a store that must never be reached"""
    store = AsyncMock(spec=RecordStore)
    return TaskLifecycleController(store), store


def someone(*codes):
    return Requester(id="u1", grants=PermissionSet(codes))


# ============================================================
# TRANSITION TABLE
# ============================================================

ALLOWED = {
    (TaskStatus.NEW, TaskStatus.IN_PROGRESS),
    (TaskStatus.NEW, TaskStatus.REJECTED),
    (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    (TaskStatus.IN_PROGRESS, TaskStatus.POSTPONED),
    (TaskStatus.IN_PROGRESS, TaskStatus.REJECTED),
    (TaskStatus.POSTPONED, TaskStatus.IN_PROGRESS),
}


class TestTransitionTable:
    def test_table_matches_allowed_moves(self):
        table = {(src, dst) for src, targets in TRANSITIONS.items() for dst in targets}
        assert table == ALLOWED

    @pytest.mark.parametrize("src", list(TaskStatus))
    @pytest.mark.parametrize("dst", list(TaskStatus))
    def test_everything_outside_table_rejected(self, src, dst):
        if (src, dst) in ALLOWED:
            validate_transition(src, dst, reason="because")
        else:
            with pytest.raises(InvalidTransitionError):
                validate_transition(src, dst, reason="because")

    def test_terminal_statuses_have_no_moves(self):
        assert allowed_transitions(TaskStatus.COMPLETED) == []
        assert allowed_transitions("rejected") == []

    @pytest.mark.parametrize("src,dst", [
        (TaskStatus.NEW, TaskStatus.REJECTED),
        (TaskStatus.IN_PROGRESS, TaskStatus.POSTPONED),
        (TaskStatus.IN_PROGRESS, TaskStatus.REJECTED),
    ])
    def test_reason_required(self, src, dst):
        for reason in (None, "", "   "):
            with pytest.raises(ValidationError):
                validate_transition(src, dst, reason)
        assert validate_transition(src, dst, "  client asked  ") == "client asked"

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError):
            validate_transition("new", "archived")


@pytest.mark.asyncio
class TestRejectedBeforeStore:
    async def test_new_to_completed_never_reaches_store(self):
        controller, store = offline_controller()
        with pytest.raises(InvalidTransitionError) as exc_info:
            await controller.transition("t1", "completed", "new", someone("edit:tasks:own"))
        assert exc_info.value.from_status == "new"
        assert exc_info.value.to_status == "completed"
        store.get.assert_not_awaited()
        store.update_task_status.assert_not_awaited()

    async def test_postpone_without_reason_never_reaches_store(self):
        controller, store = offline_controller()
        with pytest.raises(ValidationError):
            await controller.transition("t1", "postponed", "in_progress", someone("edit:tasks:own"), reason="  ")
        store.get.assert_not_awaited()
        store.update_task_status.assert_not_awaited()

    async def test_blank_comment_never_reaches_store(self):
        controller, store = offline_controller()
        with pytest.raises(ValidationError):
            await controller.add_comment("t1", "   ", someone("view:tasks:own"))
        store.get.assert_not_awaited()
        store.add_task_comment.assert_not_awaited()

    @pytest.mark.parametrize("duration", [0, -30, 1.5, "60", True, None])
    async def test_bad_duration_never_reaches_store(self, duration):
        controller, store = offline_controller()
        with pytest.raises(ValidationError):
            await controller.record_time("t1", duration, someone("view:tasks:own"))
        store.save_task_time_record.assert_not_awaited()

    async def test_status_field_rejected_by_detail_edit(self):
        controller, store = offline_controller()
        with pytest.raises(ValidationError):
            await controller.update_details("t1", {"status": "completed"}, someone("edit:tasks:own"))
        store.get.assert_not_awaited()


# ============================================================
# STATUS CHANGES AGAINST THE STORE
# ============================================================

@pytest.mark.asyncio
class TestTransitions:
    async def test_creator_assignee_scenario(self, db_session, store, session_factory, test_branch):
        user_a = await create_user(
            db_session, "creator@letterdesk.dev", "Ana Creator", branch=test_branch,
            permissions=["create:tasks:own", "view:tasks:own", "assign:tasks"],
        )
        user_b = await create_user(
            db_session, "worker@letterdesk.dev", "Ben Worker", branch=test_branch,
            permissions=["complete:tasks:own", "view:tasks:assigned"],
        )
        controller = TaskLifecycleController(store)
        requester_a = await requester_for(user_a, store, NO_ROLE_DEFAULTS)
        requester_b = await requester_for(user_b, store, NO_ROLE_DEFAULTS)

        task = await controller.create_task(requester_a, "Send renewal letters", assigned_to=user_b.id)
        task_id = task.id
        assert task.status == TaskStatus.NEW

        started = await controller.transition(task_id, "in_progress", "new", requester_b)
        assert started.status == TaskStatus.IN_PROGRESS

        # Creator without edit:tasks:own may not move the task
        with pytest.raises(AuthorizationError):
            await controller.transition(task_id, "completed", "in_progress", requester_a)

        done = await controller.transition(task_id, "completed", "in_progress", requester_b)
        assert done.status == TaskStatus.COMPLETED
        assert done.completion_date is not None

        stored = await reload_task(session_factory, task_id)
        assert stored.status == TaskStatus.COMPLETED
        actions = Counter(log.action for log in await task_logs(session_factory, task_id))
        assert actions == Counter({TaskLogAction.CREATE: 1, TaskLogAction.UPDATE_STATUS: 2})

    async def test_status_log_records_reason(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        await controller.transition(task.id, TaskStatus.REJECTED, TaskStatus.NEW, requester, reason="Duplicate")

        logs = await task_logs(session_factory, task.id)
        assert len(logs) == 1
        assert logs[0].action == TaskLogAction.UPDATE_STATUS
        assert logs[0].previous_status == TaskStatus.NEW
        assert logs[0].new_status == TaskStatus.REJECTED
        assert logs[0].notes == "Duplicate"
        assert logs[0].user_id == test_user.id

    async def test_completion_date_only_on_completed(self, db_session, store, test_user):
        task = await create_task(db_session, test_user, status=TaskStatus.IN_PROGRESS)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        postponed = await controller.transition(task.id, "postponed", "in_progress", requester, reason="Waiting on legal")
        assert postponed.completion_date is None

    async def test_stale_expected_status_conflicts(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user, status=TaskStatus.IN_PROGRESS)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        with pytest.raises(ConflictError) as exc_info:
            await controller.transition(task.id, "in_progress", "new", requester)
        assert exc_info.value.details["current_status"] == "in_progress"
        assert await task_logs(session_factory, task.id) == []

    async def test_concurrent_change_loses_compare_and_set(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user)
        task_id = task.id

        class RacingStore(RecordStore):
            async def update_task_status(self, *args, **kwargs):
                # Another writer rejects the task between the read and the write
                async with session_factory() as other:
                    await other.execute(
                        update(Task).where(Task.id == task_id).values(status=TaskStatus.REJECTED)
                    )
                    await other.commit()
                return await super().update_task_status(*args, **kwargs)

        racing = RacingStore(store._session, procedures=store.procedures)
        controller = TaskLifecycleController(racing)
        requester = await requester_for(test_user, racing)

        with pytest.raises(ConflictError):
            await controller.transition(task_id, "in_progress", "new", requester)

        stored = await reload_task(session_factory, task_id)
        assert stored.status == TaskStatus.REJECTED
        assert await task_logs(session_factory, task_id) == []

    async def test_missing_procedure_falls_back_with_warning(self, db_session, store, test_user, caplog):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        with caplog.at_level(logging.WARNING, logger="letterdesk.rpc"):
            moved = await controller.transition(task.id, "in_progress", "new", requester)

        assert moved.status == TaskStatus.IN_PROGRESS
        assert "Degraded mode" in caplog.text
        assert "update_task_status" in caplog.text
        assert store.procedures.status("update_task_status") is False

    async def test_outsider_cannot_change_status(self, db_session, store, test_user, outsider_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(outsider_user, store)
        with pytest.raises(AuthorizationError):
            await controller.transition(task.id, "in_progress", "new", requester)

    async def test_admin_can_change_any_task(self, db_session, store, test_user, admin_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(admin_user, store)
        moved = await controller.transition(task.id, "in_progress", "new", requester)
        assert moved.status == TaskStatus.IN_PROGRESS

    async def test_missing_task(self, store, test_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        with pytest.raises(NotFoundError):
            await controller.transition("does-not-exist", "in_progress", "new", requester)


# ============================================================
# CREATE / EDIT / DELETE
# ============================================================

@pytest.mark.asyncio
class TestTaskMutations:
    async def test_create_defaults(self, store, session_factory, dispatcher_user, assignee_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(dispatcher_user, store)
        task = await controller.create_task(requester, "  Draft welcome letter  ", assigned_to=assignee_user.id)

        assert task.title == "Draft welcome letter"
        assert task.status == TaskStatus.NEW
        assert task.priority == TaskPriority.MEDIUM
        assert task.created_by == dispatcher_user.id
        assert task.assigned_to == assignee_user.id
        assert task.branch_id == dispatcher_user.branch_id
        logs = await task_logs(session_factory, task.id)
        assert [log.action for log in logs] == [TaskLogAction.CREATE]

    async def test_create_requires_title(self, store, test_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        with pytest.raises(ValidationError):
            await controller.create_task(requester, "   ")

    async def test_create_requires_grant(self, store, test_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store, NO_ROLE_DEFAULTS)
        with pytest.raises(AuthorizationError):
            await controller.create_task(requester, "Not allowed")

    async def test_create_rejects_inactive_assignee(self, db_session, store, dispatcher_user, test_branch):
        inactive = await create_user(db_session, "gone@letterdesk.dev", "Gone User", branch=test_branch, is_active=False)
        controller = TaskLifecycleController(store)
        requester = await requester_for(dispatcher_user, store)
        with pytest.raises(ValidationError):
            await controller.create_task(requester, "Assign to nobody", assigned_to=inactive.id)

    async def test_update_details_logs_changed_fields(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user, title="Old title")
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        updated = await controller.update_details(
            task.id, {"title": "New title", "priority": "high"}, requester,
        )
        assert updated.title == "New title"
        assert updated.priority == TaskPriority.HIGH
        logs = await task_logs(session_factory, task.id)
        assert [(log.action, log.notes) for log in logs] == [
            (TaskLogAction.UPDATE_DETAILS, "Updated: priority, title"),
        ]

    async def test_noop_edit_writes_nothing(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user, title="Same title")
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        await controller.update_details(task.id, {"title": "Same title"}, requester)
        assert await task_logs(session_factory, task.id) == []

    async def test_unknown_field_rejected(self, db_session, store, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        with pytest.raises(ValidationError):
            await controller.update_details(task.id, {"created_by": "someone"}, requester)

    async def test_outsider_edit_reads_as_missing(self, db_session, store, test_user, outsider_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(outsider_user, store)
        with pytest.raises(NotFoundError):
            await controller.update_details(task.id, {"title": "Hijacked"}, requester)

    async def test_outsider_time_and_attachments_read_as_missing(
        self, db_session, store, session_factory, test_user, outsider_user, tmp_path,
    ):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store, blob_storage=LocalBlobStorage(str(tmp_path)))
        requester = await requester_for(outsider_user, store)
        with pytest.raises(NotFoundError):
            await controller.record_time(task.id, 60, requester)
        with pytest.raises(NotFoundError):
            await controller.upload_attachment(task.id, "a.txt", b"a", requester)
        assert await task_logs(session_factory, task.id) == []


@pytest.mark.asyncio
class TestAssignment:
    async def test_create_assigned_to_other_requires_grant(self, store, test_user, assignee_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        assert not requester.grants.has("assign:tasks")
        with pytest.raises(AuthorizationError):
            await controller.create_task(requester, "Hand over", assigned_to=assignee_user.id)

    async def test_create_assigned_to_self_is_allowed(self, store, test_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        task = await controller.create_task(requester, "My own errand", assigned_to=test_user.id)
        assert task.assigned_to == test_user.id

    async def test_create_with_blank_assignee_is_unassigned(self, store, test_user):
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        task = await controller.create_task(requester, "Unassigned", assigned_to="")
        assert task.assigned_to is None

    async def test_assignee_cannot_reassign(self, db_session, store, session_factory,
                                            test_user, assignee_user, outsider_user):
        task = await create_task(db_session, test_user, assignee=assignee_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(assignee_user, store)
        with pytest.raises(AuthorizationError):
            await controller.update_details(task.id, {"assigned_to": outsider_user.id}, requester)
        with pytest.raises(AuthorizationError):
            await controller.update_details(task.id, {"assigned_to": None}, requester)

        stored = await reload_task(session_factory, task.id)
        assert stored.assigned_to == assignee_user.id
        assert await task_logs(session_factory, task.id) == []

    async def test_creator_without_grant_cannot_reassign(self, db_session, store, test_user, assignee_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)
        with pytest.raises(AuthorizationError):
            await controller.update_details(task.id, {"assigned_to": assignee_user.id}, requester)

    async def test_dispatcher_reassigns(self, db_session, store, session_factory,
                                        dispatcher_user, assignee_user, outsider_user):
        task = await create_task(db_session, dispatcher_user, assignee=assignee_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(dispatcher_user, store)

        updated = await controller.update_details(task.id, {"assigned_to": outsider_user.id}, requester)
        assert updated.assigned_to == outsider_user.id
        logs = await task_logs(session_factory, task.id)
        assert [log.notes for log in logs] == ["Updated: assigned_to"]

    async def test_blank_assignee_clears_assignment(self, db_session, store, session_factory,
                                                    dispatcher_user, assignee_user):
        task = await create_task(db_session, dispatcher_user, assignee=assignee_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(dispatcher_user, store)

        updated = await controller.update_details(task.id, {"assigned_to": ""}, requester)
        assert updated.assigned_to is None
        stored = await reload_task(session_factory, task.id)
        assert stored.assigned_to is None

    async def test_blank_assignee_on_unassigned_task_is_noop(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        await controller.update_details(task.id, {"assigned_to": ""}, requester)
        assert await task_logs(session_factory, task.id) == []

    async def test_soft_delete(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        await controller.delete_task(task.id, requester)

        stored = await reload_task(session_factory, task.id)
        assert stored is not None
        assert stored.is_active is False
        logs = await task_logs(session_factory, task.id)
        assert [log.notes for log in logs] == ["Task deactivated"]
        with pytest.raises(NotFoundError):
            await controller.transition(task.id, "in_progress", "new", requester)

    async def test_assignee_cannot_delete(self, db_session, store, test_user, assignee_user):
        task = await create_task(db_session, test_user, assignee=assignee_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(assignee_user, store)
        with pytest.raises(AuthorizationError):
            await controller.delete_task(task.id, requester)


# ============================================================
# COMMENTS AND TIME RECORDS
# ============================================================

@pytest.mark.asyncio
class TestCommentsAndTime:
    async def test_comment_appends_log(self, db_session, store, session_factory, test_user, assignee_user):
        task = await create_task(db_session, test_user, assignee=assignee_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(assignee_user, store)

        await controller.add_comment(task.id, "  Started drafting  ", requester)

        logs = await task_logs(session_factory, task.id)
        assert [(log.action, log.notes, log.user_id) for log in logs] == [
            (TaskLogAction.COMMENT, "Started drafting", assignee_user.id),
        ]

    async def test_outsider_comment_reads_as_missing(self, db_session, store, test_user, outsider_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(outsider_user, store)
        with pytest.raises(NotFoundError):
            await controller.add_comment(task.id, "Hello", requester)

    async def test_time_record_round_trip(self, db_session, store, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store)
        requester = await requester_for(test_user, store)

        await controller.record_time(task.id, 90, requester, notes="Drafting")
        await controller.record_time(task.id, 30, requester)

        records = await TaskQueryService(store).list_time_records(task.id, requester)
        assert sorted((r.duration_seconds, r.notes) for r in records) == [(30, None), (90, "Drafting")]
        assert all(r.user_name == "Test User" for r in records)


# ============================================================
# ATTACHMENTS
# ============================================================

class BrokenBlobStorage(BlobStorage):
    async def upload(self, path, data, content_type=None):
        raise TransientIOError("Attachment storage unavailable; please retry")

    async def delete(self, path):
        raise TransientIOError("Attachment storage unavailable; please retry")


@pytest.mark.asyncio
class TestAttachments:
    async def test_upload_and_remove(self, db_session, store, session_factory, test_user, tmp_path):
        task = await create_task(db_session, test_user)
        blobs = LocalBlobStorage(str(tmp_path), "/files")
        controller = TaskLifecycleController(store, blob_storage=blobs)
        requester = await requester_for(test_user, store)

        attachment = await controller.upload_attachment(
            task.id, "../quarterly report.PDF", b"%PDF-1.4", requester, content_type="application/pdf",
        )
        assert attachment.file_name == "quarterly report.PDF"
        assert attachment.file_size == 8
        assert attachment.storage_path.endswith(".pdf")
        assert attachment.file_url == f"/files/{attachment.storage_path}"
        assert (tmp_path / attachment.storage_path).read_bytes() == b"%PDF-1.4"

        await controller.remove_attachment(task.id, attachment.id, requester)
        assert not (tmp_path / attachment.storage_path).exists()

        notes = [log.notes for log in await task_logs(session_factory, task.id)]
        assert sorted(notes) == [
            "Attachment added: quarterly report.PDF",
            "Attachment removed: quarterly report.PDF",
        ]

    async def test_oversized_upload_rejected(self, db_session, store, test_user, tmp_path):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(
            store, blob_storage=LocalBlobStorage(str(tmp_path)), max_attachment_bytes=4,
        )
        requester = await requester_for(test_user, store)
        with pytest.raises(ValidationError):
            await controller.upload_attachment(task.id, "big.txt", b"too large", requester)
        assert list(tmp_path.iterdir()) == []

    async def test_storage_failure_writes_nothing(self, db_session, store, session_factory, test_user):
        task = await create_task(db_session, test_user)
        controller = TaskLifecycleController(store, blob_storage=BrokenBlobStorage())
        requester = await requester_for(test_user, store)
        with pytest.raises(TransientIOError) as exc_info:
            await controller.upload_attachment(task.id, "notes.txt", b"hello", requester)
        assert exc_info.value.retryable
        assert await task_logs(session_factory, task.id) == []

    async def test_remove_attachment_of_other_task(self, db_session, store, test_user, tmp_path):
        first = await create_task(db_session, test_user, title="First")
        second = await create_task(db_session, test_user, title="Second")
        controller = TaskLifecycleController(store, blob_storage=LocalBlobStorage(str(tmp_path)))
        requester = await requester_for(test_user, store)

        attachment = await controller.upload_attachment(first.id, "a.txt", b"a", requester)
        with pytest.raises(NotFoundError):
            await controller.remove_attachment(second.id, attachment.id, requester)

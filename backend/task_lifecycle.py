# task_lifecycle.py - Task status state machine and task mutations
#
# Every task mutation goes through TaskLifecycleController:
# - status transitions (table below, reason capture, compare-and-set)
# - create / edit details / soft delete
# - comments, time records, attachments
# Each successful mutation appends exactly one TaskLog row. Validation and
# transition errors are raised before the store is touched.

import logging
import uuid
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Union

from errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    TaskDeskError, TransientIOError, ValidationError,
)
from models import (
    Task, TaskAttachment, TaskLog, TaskLogAction, TaskPriority, TaskStatus, User, utcnow,
)
from permissions import Requester, can_perform
from storage import MAX_ATTACHMENT_BYTES, BlobStorage
from store import TASK_RELATIONS, RecordStore

logger = logging.getLogger("letterdesk.tasks")


# ============================================================
# STATE MACHINE
# ============================================================

# from -> {to: reason required}
TRANSITIONS: Dict[TaskStatus, Dict[TaskStatus, bool]] = {
    TaskStatus.NEW: {
        TaskStatus.IN_PROGRESS: False,
        TaskStatus.REJECTED: True,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETED: False,
        TaskStatus.POSTPONED: True,
        TaskStatus.REJECTED: True,
    },
    TaskStatus.POSTPONED: {
        TaskStatus.IN_PROGRESS: False,
    },
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.REJECTED})

EDITABLE_FIELDS = ("title", "description", "priority", "assigned_to", "due_date", "branch_id", "notes")


def _coerce_status(value: Union[str, TaskStatus]) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown task status: {value!r}")


def allowed_transitions(from_status: Union[str, TaskStatus]) -> List[TaskStatus]:
    return list(TRANSITIONS.get(_coerce_status(from_status), {}))


def validate_transition(
    from_status: Union[str, TaskStatus],
    to_status: Union[str, TaskStatus],
    reason: Optional[str] = None,
) -> Optional[str]:
    """Check a transition against the table; returns the normalized reason"""
    from_status = _coerce_status(from_status)
    to_status = _coerce_status(to_status)
    targets = TRANSITIONS.get(from_status, {})
    if to_status not in targets:
        raise InvalidTransitionError(from_status.value, to_status.value)

    reason = (reason or "").strip() or None
    if targets[to_status] and reason is None:
        raise ValidationError(
            f"A reason is required to move a task to '{to_status.value}'",
            details={"field": "reason"},
        )
    return reason


# ============================================================
# CONTROLLER
# ============================================================

class TaskLifecycleController:
    """Validates, authorizes and persists task mutations"""

    def __init__(
        self,
        store: RecordStore,
        blob_storage: Optional[BlobStorage] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attachment_bytes: int = MAX_ATTACHMENT_BYTES,
    ):
        self._store = store
        self._blob_storage = blob_storage
        self._clock = clock
        self._max_attachment_bytes = max_attachment_bytes

    # --- Authorization helpers ---

    @staticmethod
    def can_access_task(task: Any, requester: Requester) -> bool:
        """admin, view-all, view-own on a created task, or view-assigned on an assigned one"""
        return can_perform("view", "tasks", requester, task)

    @staticmethod
    def can_change_status(task: Any, requester: Requester) -> bool:
        return can_perform("change_status", "tasks", requester, task)

    async def _load_task(self, task_id: str) -> Task:
        task = await self._store.get(Task, task_id, options=TASK_RELATIONS)
        if task is None or not task.is_active:
            raise NotFoundError("Task not found")
        return task

    async def _load_accessible(self, task_id: str, requester: Requester) -> Task:
        task = await self._load_task(task_id)
        # Out-of-scope tasks look exactly like missing ones
        if not self.can_access_task(task, requester):
            raise NotFoundError("Task not found")
        return task

    @staticmethod
    def _require_assign(assignee_id: Optional[str], requester: Requester) -> None:
        """Handing a task to someone else (or unassigning it) needs assign:tasks"""
        if assignee_id != requester.id and not can_perform("assign", "tasks", requester):
            raise AuthorizationError("You are not allowed to assign tasks to other users")

    # --- Status transitions ---

    async def transition(
        self,
        task_id: str,
        new_status: Union[str, TaskStatus],
        expected_status: Union[str, TaskStatus],
        requester: Requester,
        reason: Optional[str] = None,
    ) -> Task:
        """Move a task from ``expected_status`` to ``new_status``.

        ``expected_status`` is the status the caller last observed. If the
        stored status differs at write time the call fails with ConflictError
        and nothing is written; callers re-read before trying again.
        """
        new_status = _coerce_status(new_status)
        expected_status = _coerce_status(expected_status)
        reason = validate_transition(expected_status, new_status, reason)

        task = await self._load_task(task_id)
        if not self.can_change_status(task, requester):
            raise AuthorizationError("You are not allowed to change the status of this task")
        if task.status != expected_status:
            raise ConflictError(
                "Task status changed since it was last read; reload and retry",
                details={"expected_status": expected_status.value, "current_status": task.status.value},
            )

        completion_date = self._clock() if new_status is TaskStatus.COMPLETED else None
        updated = await self._store.update_task_status(
            task_id, new_status, completion_date, expected_status, requester.id, reason,
        )
        if not updated:
            raise ConflictError(
                "Task status changed since it was last read; reload and retry",
                details={"expected_status": expected_status.value},
            )

        logger.info(f"Task {task_id}: {expected_status.value} -> {new_status.value} by {requester.id}")
        return await self._load_task(task_id)

    # --- Create / edit / delete ---

    async def create_task(
        self,
        requester: Requester,
        title: str,
        description: Optional[str] = None,
        priority: Union[str, TaskPriority] = TaskPriority.MEDIUM,
        assigned_to: Optional[str] = None,
        due_date: Optional[datetime] = None,
        branch_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Task:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required", details={"field": "title"})
        priority = self._coerce_priority(priority)
        if not can_perform("create", "tasks", requester):
            raise AuthorizationError("You are not allowed to create tasks")
        assigned_to = assigned_to or None
        if assigned_to:
            self._require_assign(assigned_to, requester)
            await self._require_assignable(assigned_to)

        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            status=TaskStatus.NEW,
            priority=priority,
            created_by=requester.id,
            assigned_to=assigned_to,
            branch_id=branch_id or requester.branch_id,
            due_date=due_date,
            notes=notes,
            is_active=True,
        )
        task_id = task.id
        await self._store.insert(task, commit=False)
        await self._store.insert(TaskLog(
            task_id=task_id,
            user_id=requester.id,
            action=TaskLogAction.CREATE,
            new_status=TaskStatus.NEW,
            notes="Task created",
            created_at=self._clock(),
        ), commit=False)
        await self._store.commit()

        logger.info(f"Task {task_id} created by {requester.id}")
        return await self._load_task(task_id)

    async def update_details(self, task_id: str, changes: Dict[str, Any], requester: Requester) -> Task:
        """Edit task fields other than status; a no-op edit writes nothing"""
        if "status" in changes:
            raise ValidationError("Status changes go through the status transition endpoint")
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")
        if "title" in changes:
            changes["title"] = (changes["title"] or "").strip()
            if not changes["title"]:
                raise ValidationError("Title is required", details={"field": "title"})
        if "priority" in changes:
            changes["priority"] = self._coerce_priority(changes["priority"])
        if "assigned_to" in changes:
            changes["assigned_to"] = changes["assigned_to"] or None

        task = await self._load_accessible(task_id, requester)
        if "assigned_to" in changes and changes["assigned_to"] != task.assigned_to:
            self._require_assign(changes["assigned_to"], requester)
            if changes["assigned_to"]:
                await self._require_assignable(changes["assigned_to"])

        values = {field: value for field, value in changes.items() if getattr(task, field) != value}
        if not values:
            return task

        changed = sorted(values)
        values["updated_at"] = self._clock()
        matched = await self._store.update(
            Task, (Task.id == task_id, Task.is_active.is_(True)), values, commit=False,
        )
        if matched != 1:
            await self._store.rollback()
            raise NotFoundError("Task not found")
        await self._store.insert(TaskLog(
            task_id=task_id,
            user_id=requester.id,
            action=TaskLogAction.UPDATE_DETAILS,
            notes=f"Updated: {', '.join(changed)}",
            created_at=self._clock(),
        ), commit=False)
        await self._store.commit()

        logger.info(f"Task {task_id} details updated by {requester.id}: {changed}")
        return await self._load_task(task_id)

    async def delete_task(self, task_id: str, requester: Requester) -> None:
        """Soft delete: the row stays, is_active goes false"""
        task = await self._load_task(task_id)
        if not can_perform("delete", "tasks", requester, task):
            raise AuthorizationError("You are not allowed to delete this task")

        matched = await self._store.update(
            Task,
            (Task.id == task_id, Task.is_active.is_(True)),
            {"is_active": False, "updated_at": self._clock()},
            commit=False,
        )
        if matched != 1:
            await self._store.rollback()
            raise NotFoundError("Task not found")
        await self._store.insert(TaskLog(
            task_id=task_id,
            user_id=requester.id,
            action=TaskLogAction.UPDATE_DETAILS,
            notes="Task deactivated",
            created_at=self._clock(),
        ), commit=False)
        await self._store.commit()
        logger.info(f"Task {task_id} deactivated by {requester.id}")

    # --- Comments and time records ---

    async def add_comment(self, task_id: str, text: str, requester: Requester) -> None:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text is required", details={"field": "comment"})
        await self._load_accessible(task_id, requester)
        await self._store.add_task_comment(task_id, requester.id, text)

    async def record_time(
        self,
        task_id: str,
        duration_seconds: int,
        requester: Requester,
        notes: Optional[str] = None,
    ) -> None:
        if not isinstance(duration_seconds, int) or isinstance(duration_seconds, bool) or duration_seconds <= 0:
            raise ValidationError("Duration must be a positive number of seconds", details={"field": "duration"})
        notes = (notes or "").strip() or None
        await self._load_accessible(task_id, requester)
        await self._store.save_task_time_record(task_id, requester.id, duration_seconds, notes)

    # --- Attachments ---

    async def upload_attachment(
        self,
        task_id: str,
        file_name: str,
        data: bytes,
        requester: Requester,
        content_type: Optional[str] = None,
    ) -> TaskAttachment:
        if self._blob_storage is None:
            raise TransientIOError("Attachment storage is not configured")
        file_name = PurePosixPath((file_name or "").replace("\\", "/")).name
        if not file_name:
            raise ValidationError("File name is required", details={"field": "file"})
        if not data:
            raise ValidationError("Attachment is empty", details={"field": "file"})
        if len(data) > self._max_attachment_bytes:
            raise ValidationError(
                f"Attachment exceeds {self._max_attachment_bytes} bytes",
                details={"field": "file", "size": len(data)},
            )

        await self._load_accessible(task_id, requester)

        storage_path = f"tasks/{task_id}/{uuid.uuid4()}{PurePosixPath(file_name).suffix.lower()}"
        file_url = await self._blob_storage.upload(storage_path, data, content_type)

        attachment = TaskAttachment(
            id=str(uuid.uuid4()),
            task_id=task_id,
            file_name=file_name,
            file_size=len(data),
            file_type=content_type,
            file_url=file_url,
            storage_path=storage_path,
            uploaded_by=requester.id,
            uploaded_at=self._clock(),
        )
        try:
            await self._store.insert(attachment, commit=False)
            await self._store.insert(TaskLog(
                task_id=task_id,
                user_id=requester.id,
                action=TaskLogAction.UPDATE_DETAILS,
                notes=f"Attachment added: {file_name}",
                created_at=self._clock(),
            ), commit=False)
            await self._store.commit()
        except TaskDeskError:
            await self._discard_blob(storage_path)
            raise

        logger.info(f"Attachment {attachment.id} ({file_name}) added to task {task_id}")
        return attachment

    async def remove_attachment(self, task_id: str, attachment_id: str, requester: Requester) -> None:
        await self._load_accessible(task_id, requester)
        attachment = await self._store.get(TaskAttachment, attachment_id)
        if attachment is None or attachment.task_id != task_id:
            raise NotFoundError("Attachment not found")

        storage_path = attachment.storage_path
        file_name = attachment.file_name
        await self._store.delete(attachment, commit=False)
        await self._store.insert(TaskLog(
            task_id=task_id,
            user_id=requester.id,
            action=TaskLogAction.UPDATE_DETAILS,
            notes=f"Attachment removed: {file_name}",
            created_at=self._clock(),
        ), commit=False)
        await self._store.commit()

        # The record is gone; an orphaned blob only costs storage
        await self._discard_blob(storage_path)

    async def _discard_blob(self, storage_path: str) -> None:
        if self._blob_storage is None:
            return
        try:
            await self._blob_storage.delete(storage_path)
        except TaskDeskError as exc:
            logger.warning(f"Could not delete blob {storage_path}: {exc.message}")

    # --- Helpers ---

    @staticmethod
    def _coerce_priority(value: Union[str, TaskPriority]) -> TaskPriority:
        try:
            return TaskPriority(value)
        except ValueError:
            raise ValidationError(f"Unknown task priority: {value!r}", details={"field": "priority"})

    async def _require_assignable(self, user_id: str) -> None:
        user = await self._store.get(User, user_id)
        if user is None or not user.is_active:
            raise ValidationError("Assignee not found or inactive", details={"field": "assigned_to"})

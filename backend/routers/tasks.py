# routers/tasks.py - Task management: listing, lifecycle, comments, time, attachments
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, File as FastAPIFile, Query, UploadFile
from pydantic import BaseModel, Field

from auth import get_current_user, CurrentUser
from dependencies import get_controller, get_query_service
from models import Task, TaskAttachment, TaskLog
from task_lifecycle import TaskLifecycleController, allowed_transitions
from task_queries import TaskFilters, TaskQueryService, TimeRecord

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: str = "medium"
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    branch_id: Optional[str] = None
    notes: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    branch_id: Optional[str] = None
    notes: Optional[str] = None


class StatusChange(BaseModel):
    status: str
    expected_status: str = Field(..., description="Status the client last observed")
    reason: Optional[str] = None


class CommentCreate(BaseModel):
    comment: str = Field(..., max_length=5000)


class TimeRecordCreate(BaseModel):
    duration_seconds: int = Field(..., gt=0, le=7 * 24 * 3600)
    notes: Optional[str] = None


class AttachmentOut(BaseModel):
    id: str
    task_id: str
    file_name: str
    file_size: int
    file_type: Optional[str] = None
    file_url: str
    uploaded_by: str
    uploaded_at: Optional[str] = None


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    created_by: str
    creator_name: Optional[str] = None
    assigned_to: Optional[str] = None
    assignee_name: Optional[str] = None
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    due_date: Optional[str] = None
    completion_date: Optional[str] = None
    notes: Optional[str] = None
    allowed_transitions: List[str] = []
    attachment_count: int = 0
    created_at: str
    updated_at: Optional[str] = None


class TaskLogOut(BaseModel):
    id: str
    action: str
    user_id: str
    user_name: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: Optional[str] = None
    created_at: str


class TimeRecordOut(BaseModel):
    id: str
    user_id: str
    user_name: str
    duration_seconds: int
    notes: Optional[str] = None
    created_at: str


class TaskDetailOut(TaskOut):
    logs: List[TaskLogOut] = []
    comments: List[TaskLogOut] = []
    attachments: List[AttachmentOut] = []
    time_records: List[TimeRecordOut] = []
    total_time_seconds: int = 0


# ============================================================
# HELPERS
# ============================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority.value,
        "created_by": task.created_by,
        "creator_name": task.creator.full_name if task.creator else None,
        "assigned_to": task.assigned_to,
        "assignee_name": task.assignee.full_name if task.assignee else None,
        "branch_id": task.branch_id,
        "branch_name": task.branch.name if task.branch else None,
        "due_date": _iso(task.due_date),
        "completion_date": _iso(task.completion_date),
        "notes": task.notes,
        "allowed_transitions": [s.value for s in allowed_transitions(task.status)],
        "attachment_count": len(task.attachments),
        "created_at": _iso(task.created_at) or "",
        "updated_at": _iso(task.updated_at),
    }


def task_to_out(task: Task) -> TaskOut:
    return TaskOut(**task_to_dict(task))


def _log_to_out(log: TaskLog) -> TaskLogOut:
    return TaskLogOut(
        id=log.id,
        action=log.action.value,
        user_id=log.user_id,
        user_name=log.user.full_name if log.user else None,
        previous_status=log.previous_status.value if log.previous_status else None,
        new_status=log.new_status.value if log.new_status else None,
        notes=log.notes,
        created_at=_iso(log.created_at) or "",
    )


def _attachment_to_out(a: TaskAttachment) -> AttachmentOut:
    return AttachmentOut(
        id=a.id,
        task_id=a.task_id,
        file_name=a.file_name,
        file_size=a.file_size or 0,
        file_type=a.file_type,
        file_url=a.file_url,
        uploaded_by=a.uploaded_by,
        uploaded_at=_iso(a.uploaded_at),
    )


def _time_record_to_out(record: TimeRecord) -> TimeRecordOut:
    return TimeRecordOut(
        id=record.id,
        user_id=record.user_id,
        user_name=record.user_name,
        duration_seconds=record.duration_seconds,
        notes=record.notes,
        created_at=_iso(record.created_at) or "",
    )


# ============================================================
# QUERIES
# ============================================================

@router.get("")
async def list_tasks(
    status: str = Query(default="all"),
    priority: str = Query(default="all"),
    assignee_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    search: Optional[str] = Query(default=None, max_length=200),
    timeframe: str = Query(default="all"),
    task_type: str = Query(default="all"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    queries: TaskQueryService = Depends(get_query_service),
):
    """List tasks visible to the current user"""
    filters = TaskFilters(
        status=status,
        priority=priority,
        assignee_id=assignee_id,
        branch_id=branch_id,
        search=search,
        timeframe=timeframe,
        task_type=task_type,
        limit=limit,
        offset=offset,
    )
    tasks = await queries.list(filters, user.requester)
    return {"tasks": [task_to_out(t) for t in tasks], "count": len(tasks)}


@router.get("/summary")
async def task_summary(
    branch_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    queries: TaskQueryService = Depends(get_query_service),
):
    """Counts per status plus overdue / assigned to me / created by me"""
    summary = await queries.summarize(user.requester, branch_id)
    return summary.to_dict()


@router.get("/{task_id}", response_model=TaskDetailOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    queries: TaskQueryService = Depends(get_query_service),
):
    """Task with its log trail, attachments and time records"""
    detail = await queries.get_task_detail(task_id, user.requester)
    return TaskDetailOut(
        **task_to_dict(detail.task),
        logs=[_log_to_out(log) for log in detail.logs],
        comments=[_log_to_out(log) for log in detail.comments],
        attachments=[_attachment_to_out(a) for a in detail.task.attachments],
        time_records=[_time_record_to_out(r) for r in detail.time_records],
        total_time_seconds=detail.total_time_seconds,
    )


# ============================================================
# MUTATIONS
# ============================================================

@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Create a task in status 'new'"""
    task = await controller.create_task(user.requester, **data.model_dump())
    return task_to_out(task)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Edit task details (not status)"""
    task = await controller.update_details(task_id, data.model_dump(exclude_unset=True), user.requester)
    return task_to_out(task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Soft-delete a task"""
    await controller.delete_task(task_id, user.requester)
    return {"status": "deleted", "task_id": task_id}


@router.post("/{task_id}/status", response_model=TaskOut)
async def change_status(
    task_id: str,
    data: StatusChange,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Move a task through the status state machine (compare-and-set on expected_status)"""
    task = await controller.transition(
        task_id, data.status, data.expected_status, user.requester, reason=data.reason,
    )
    return task_to_out(task)


@router.post("/{task_id}/comments", response_model=List[TaskLogOut], status_code=201)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
    queries: TaskQueryService = Depends(get_query_service),
):
    """Add a comment; returns the task's comments, newest first"""
    await controller.add_comment(task_id, data.comment, user.requester)
    detail = await queries.get_task_detail(task_id, user.requester)
    return [_log_to_out(log) for log in detail.comments]


@router.get("/{task_id}/time-records", response_model=List[TimeRecordOut])
async def list_time_records(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    queries: TaskQueryService = Depends(get_query_service),
):
    records = await queries.list_time_records(task_id, user.requester)
    return [_time_record_to_out(r) for r in records]


@router.post("/{task_id}/time-records", response_model=List[TimeRecordOut], status_code=201)
async def record_time(
    task_id: str,
    data: TimeRecordCreate,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
    queries: TaskQueryService = Depends(get_query_service),
):
    """Record elapsed time on a task"""
    await controller.record_time(task_id, data.duration_seconds, user.requester, notes=data.notes)
    records = await queries.list_time_records(task_id, user.requester)
    return [_time_record_to_out(r) for r in records]


@router.post("/{task_id}/attachments", response_model=AttachmentOut, status_code=201)
async def upload_attachment(
    task_id: str,
    file: UploadFile = FastAPIFile(...),
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Upload a file attachment to a task"""
    data = await file.read()
    attachment = await controller.upload_attachment(
        task_id, file.filename or "", data, user.requester, content_type=file.content_type,
    )
    return _attachment_to_out(attachment)


@router.delete("/{task_id}/attachments/{attachment_id}")
async def remove_attachment(
    task_id: str,
    attachment_id: str,
    user: CurrentUser = Depends(get_current_user),
    controller: TaskLifecycleController = Depends(get_controller),
):
    """Delete a file attachment"""
    await controller.remove_attachment(task_id, attachment_id, user.requester)
    return {"status": "deleted", "attachment_id": attachment_id}

# task_queries.py - Scoped task listing, summaries and task detail
import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from errors import NotFoundError, ValidationError
from models import Task, TaskLog, TaskLogAction, TaskPriority, TaskStatus, utcnow
from permissions import OWNERSHIP_RULES, Relation, Requester, can_perform
from store import TASK_RELATIONS, RecordStore, parse_time_record
from task_lifecycle import TERMINAL_STATUSES

logger = logging.getLogger("letterdesk.tasks")

ALL = "all"


class Timeframe(str, Enum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    OVERDUE = "overdue"


class TaskType(str, Enum):
    ALL = "all"
    ASSIGNED_TO_ME = "assigned_to_me"
    CREATED_BY_ME = "created_by_me"


@dataclass
class TaskFilters:
    status: str = ALL
    priority: str = ALL
    assignee_id: Optional[str] = None
    branch_id: Optional[str] = None
    search: Optional[str] = None
    timeframe: str = Timeframe.ALL.value
    task_type: str = TaskType.ALL.value
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class TaskSummary:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in TaskStatus})
    overdue: int = 0
    assigned_to_me: int = 0
    created_by_me: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "overdue": self.overdue,
            "assigned_to_me": self.assigned_to_me,
            "created_by_me": self.created_by_me,
        }


@dataclass
class TimeRecord:
    id: str
    user_id: str
    user_name: str
    duration_seconds: int
    notes: Optional[str]
    created_at: datetime


@dataclass
class TaskDetail:
    task: Task
    logs: List[TaskLog]
    time_records: List[TimeRecord]

    @property
    def comments(self) -> List[TaskLog]:
        return [log for log in self.logs if log.action == TaskLogAction.COMMENT]

    @property
    def total_time_seconds(self) -> int:
        return sum(r.duration_seconds for r in self.time_records)


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_month(moment: datetime) -> datetime:
    year, month = (moment.year + 1, 1) if moment.month == 12 else (moment.year, moment.month + 1)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class TaskQueryService:
    """Reads tasks within the requester's permission scope"""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------
    # Scoping
    # ------------------------------------------------------------

    @staticmethod
    def scope_criteria(requester: Requester) -> Optional[List[Any]]:
        """Row restriction for the requester.

        ``[]`` means unrestricted, ``None`` means the requester may see nothing.
        Derived from the same rules can_perform uses for ("view", "tasks").
        """
        if requester.is_admin:
            return []
        clauses = []
        for code, relation in OWNERSHIP_RULES[("view", "tasks")]:
            if not requester.grants.has(code):
                continue
            if relation is Relation.ANY:
                return []
            if relation is Relation.CREATOR:
                clauses.append(Task.created_by == requester.id)
            elif relation is Relation.ASSIGNEE:
                clauses.append(Task.assigned_to == requester.id)
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses
        return [or_(*clauses)]

    # ------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------

    def _filter_criteria(self, filters: TaskFilters, requester: Requester) -> List[Any]:
        criteria: List[Any] = []

        if filters.status and filters.status != ALL:
            try:
                criteria.append(Task.status == TaskStatus(filters.status))
            except ValueError:
                raise ValidationError(f"Unknown status filter: {filters.status!r}")
        if filters.priority and filters.priority != ALL:
            try:
                criteria.append(Task.priority == TaskPriority(filters.priority))
            except ValueError:
                raise ValidationError(f"Unknown priority filter: {filters.priority!r}")
        if filters.assignee_id:
            criteria.append(Task.assigned_to == filters.assignee_id)
        if filters.branch_id:
            criteria.append(Task.branch_id == filters.branch_id)

        try:
            task_type = TaskType(filters.task_type or TaskType.ALL.value)
        except ValueError:
            raise ValidationError(f"Unknown task type filter: {filters.task_type!r}")
        if task_type is TaskType.ASSIGNED_TO_ME:
            criteria.append(Task.assigned_to == requester.id)
        elif task_type is TaskType.CREATED_BY_ME:
            criteria.append(Task.created_by == requester.id)

        criteria.extend(self._timeframe_criteria(filters.timeframe))
        return criteria

    def _timeframe_criteria(self, timeframe: Optional[str]) -> List[Any]:
        try:
            timeframe = Timeframe(timeframe or Timeframe.ALL.value)
        except ValueError:
            raise ValidationError(f"Unknown timeframe filter: {timeframe!r}")

        now = self._clock()
        today = _start_of_day(now)
        if timeframe is Timeframe.TODAY:
            return [Task.due_date >= today, Task.due_date < today + timedelta(days=1)]
        if timeframe is Timeframe.WEEK:
            return [Task.due_date >= today, Task.due_date < today + timedelta(days=7)]
        if timeframe is Timeframe.MONTH:
            return [Task.due_date >= today, Task.due_date < _add_month(today)]
        if timeframe is Timeframe.OVERDUE:
            return self._overdue_criteria(now)
        return []

    @staticmethod
    def _overdue_criteria(now: datetime) -> List[Any]:
        return [
            Task.due_date.is_not(None),
            Task.due_date < now,
            Task.status.not_in(list(TERMINAL_STATUSES)),
        ]

    @staticmethod
    def _matches_search(task: Task, term: str) -> bool:
        haystack = [
            task.title,
            task.description,
            task.assignee.full_name if task.assignee else None,
            task.creator.full_name if task.creator else None,
        ]
        return any(term in value.lower() for value in haystack if value)

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    async def list(self, filters: Optional[TaskFilters], requester: Requester) -> List[Task]:
        filters = filters or TaskFilters()
        scope = self.scope_criteria(requester)
        if scope is None:
            logger.debug(f"User {requester.id} holds no task view grant; empty task list")
            return []

        criteria = [Task.is_active.is_(True), *scope, *self._filter_criteria(filters, requester)]
        term = (filters.search or "").strip().lower()

        if not term:
            return await self._store.select(
                Task, *criteria,
                order_by=(Task.created_at.desc(),),
                limit=filters.limit,
                offset=filters.offset,
                options=TASK_RELATIONS,
            )

        # Names live on the related users, so search runs after the store-side filters
        tasks = await self._store.select(
            Task, *criteria, order_by=(Task.created_at.desc(),), options=TASK_RELATIONS,
        )
        matched = [t for t in tasks if self._matches_search(t, term)]
        end = filters.offset + filters.limit if filters.limit is not None else None
        return matched[filters.offset:end]

    async def summarize(self, requester: Requester, branch_id: Optional[str] = None) -> TaskSummary:
        summary = TaskSummary()
        scope = self.scope_criteria(requester)
        if scope is None:
            return summary

        base = [Task.is_active.is_(True), *scope]
        if branch_id:
            base.append(Task.branch_id == branch_id)

        for status, count in (await self._store.grouped_count(Task.status, *base)).items():
            key = status.value if isinstance(status, TaskStatus) else str(status)
            summary.by_status[key] = count
        summary.total = sum(summary.by_status.values())
        summary.overdue = await self._store.count(Task, *base, *self._overdue_criteria(self._clock()))
        summary.assigned_to_me = await self._store.count(Task, *base, Task.assigned_to == requester.id)
        summary.created_by_me = await self._store.count(Task, *base, Task.created_by == requester.id)
        return summary

    async def get_task_detail(self, task_id: str, requester: Requester) -> TaskDetail:
        task = await self._get_visible(task_id, requester)
        logs = await self._store.select(
            TaskLog,
            TaskLog.task_id == task_id,
            order_by=(TaskLog.created_at.desc(),),
            options=(selectinload(TaskLog.user),),
        )
        time_records = [self._time_record(log) for log in logs if log.action == TaskLogAction.TIME_RECORD]
        return TaskDetail(task=task, logs=logs, time_records=time_records)

    async def list_time_records(self, task_id: str, requester: Requester) -> List[TimeRecord]:
        await self._get_visible(task_id, requester)
        logs = await self._store.select(
            TaskLog,
            TaskLog.task_id == task_id,
            TaskLog.action == TaskLogAction.TIME_RECORD,
            order_by=(TaskLog.created_at.desc(),),
            options=(selectinload(TaskLog.user),),
        )
        return [self._time_record(log) for log in logs]

    async def _get_visible(self, task_id: str, requester: Requester) -> Task:
        task = await self._store.get(Task, task_id, options=TASK_RELATIONS)
        # Out-of-scope tasks are reported exactly like missing ones
        if task is None or not task.is_active or not can_perform("view", "tasks", requester, task):
            raise NotFoundError("Task not found")
        return task

    @staticmethod
    def _time_record(log: TaskLog) -> TimeRecord:
        duration, notes = parse_time_record(log.notes)
        return TimeRecord(
            id=log.id,
            user_id=log.user_id,
            user_name=log.user.full_name if log.user else "",
            duration_seconds=duration,
            notes=notes,
            created_at=log.created_at,
        )

# store.py - Record store handle over an async SQLAlchemy session
#
# The only component that talks to the database. Services receive a
# RecordStore in their constructor; every SQLAlchemy failure is rolled back
# and converted into a domain error before it leaves this module.

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from errors import TransientIOError, ValidationError
from models import (
    PermissionBundle, Task, TaskLog, TaskLogAction, TaskStatus, User, UserRole, utcnow,
)
from rpc import ProcedureRegistry, RemoteProcedure, RpcUnavailableError

logger = logging.getLogger("letterdesk.store")

# Relationships every task read loads eagerly (no lazy loads under asyncio)
TASK_RELATIONS = (
    selectinload(Task.creator),
    selectinload(Task.assignee),
    selectinload(Task.branch),
    selectinload(Task.attachments),
)


def _is_missing_procedure(exc: SQLAlchemyError, name: str) -> bool:
    orig = getattr(exc, "orig", None)
    if orig is not None and type(orig).__name__ == "UndefinedFunctionError":
        return True
    message = str(orig if orig is not None else exc).lower()
    if name.lower() not in message:
        return False
    return "no such" in message or "does not exist" in message


@dataclass(frozen=True)
class UserRecord:
    """User joined with branch details (shape of get_user_with_branch_details)"""
    id: str
    email: str
    full_name: str
    role: str
    branch_id: Optional[str]
    branch_name: Optional[str]
    branch_code: Optional[str]
    permissions: Tuple[str, ...]
    is_active: bool
    updated_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @classmethod
    def from_user(cls, user: User) -> "UserRecord":
        branch = user.branch
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name or "",
            role=user.role.value if isinstance(user.role, UserRole) else user.role,
            branch_id=user.branch_id,
            branch_name=branch.name if branch else None,
            branch_code=branch.code if branch else None,
            permissions=tuple(user.permissions or ()),
            is_active=bool(user.is_active),
            updated_at=user.updated_at,
        )

    @classmethod
    def from_mapping(cls, row: Dict[str, Any]) -> "UserRecord":
        permissions = row.get("permissions") or []
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        return cls(
            id=row["id"],
            email=row["email"],
            full_name=row.get("full_name") or "",
            role=row["role"],
            branch_id=row.get("branch_id"),
            branch_name=row.get("branch_name"),
            branch_code=row.get("branch_code"),
            permissions=tuple(permissions),
            is_active=bool(row.get("is_active")),
            updated_at=row.get("updated_at"),
        )


class RecordStore:
    """Filtered select / insert / update / delete / count over the collections"""

    def __init__(self, session: AsyncSession, procedures: Optional[ProcedureRegistry] = None):
        self._session = session
        self.procedures = procedures if procedures is not None else ProcedureRegistry()

    # ------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------

    @asynccontextmanager
    async def _translate(self, operation: str):
        try:
            yield
        except IntegrityError as exc:
            await self._session.rollback()
            logger.info(f"{operation} rejected by constraint: {exc.orig}")
            raise ValidationError(f"{operation} violates a data constraint") from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error(f"{operation} failed: {exc}")
            raise TransientIOError(f"Storage unavailable during {operation}; please retry") from exc

    # ------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------

    async def get(self, model, record_id: str, *, options: Sequence[Any] = ()) -> Optional[Any]:
        stmt = (
            select(model)
            .where(model.id == record_id)
            .options(*options)
            .execution_options(populate_existing=True)
        )
        async with self._translate(f"get {model.__tablename__}"):
            result = await self._session.execute(stmt)
            return result.scalar_one_or_none()

    async def select(
        self,
        model,
        *criteria,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        options: Sequence[Any] = (),
    ) -> List[Any]:
        stmt = (
            select(model)
            .where(*criteria)
            .options(*options)
            .order_by(*order_by)
            .execution_options(populate_existing=True)
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._translate(f"select {model.__tablename__}"):
            result = await self._session.execute(stmt)
            return list(result.scalars().unique().all())

    async def count(self, model, *criteria) -> int:
        stmt = select(func.count(model.id)).where(*criteria)
        async with self._translate(f"count {model.__tablename__}"):
            result = await self._session.execute(stmt)
            return result.scalar() or 0

    async def grouped_count(self, column, *criteria) -> Dict[Any, int]:
        stmt = select(column, func.count()).where(*criteria).group_by(column)
        async with self._translate("grouped count"):
            result = await self._session.execute(stmt)
            return {key: count for key, count in result.all()}

    async def insert(self, record, *, commit: bool = True):
        async with self._translate(f"insert {record.__tablename__}"):
            self._session.add(record)
            await self._session.flush()
            if commit:
                await self._session.commit()
        return record

    async def update(self, model, criteria: Iterable[Any], values: Dict[str, Any], *, commit: bool = True) -> int:
        """Conditional UPDATE; returns the number of rows matched"""
        stmt = (
            update(model)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._translate(f"update {model.__tablename__}"):
            result = await self._session.execute(stmt)
            if commit:
                await self._session.commit()
            return result.rowcount

    async def save(self, record, *, commit: bool = True):
        """Persist attribute changes made on a loaded record"""
        async with self._translate(f"save {record.__tablename__}"):
            self._session.add(record)
            await self._session.flush()
            if commit:
                await self._session.commit()
        return record

    async def delete(self, record, *, commit: bool = True) -> None:
        async with self._translate(f"delete {record.__tablename__}"):
            await self._session.delete(record)
            if commit:
                await self._session.commit()

    async def commit(self) -> None:
        async with self._translate("commit"):
            await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def call_procedure(self, name: str, params: Dict[str, Any], *, returns_rows: bool = False):
        """Invoke a stored procedure; raises RpcUnavailableError if it does not exist"""
        placeholders = ", ".join(f":{key}" for key in params)
        sql = f"SELECT * FROM {name}({placeholders})" if returns_rows else f"SELECT {name}({placeholders})"
        try:
            return await self._session.execute(text(sql), params)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            if _is_missing_procedure(exc, name):
                raise RpcUnavailableError(name) from exc
            if isinstance(exc, IntegrityError):
                raise ValidationError(f"{name} violates a data constraint") from exc
            logger.error(f"Stored procedure {name} failed: {exc}")
            raise TransientIOError(f"Storage unavailable during {name}; please retry") from exc

    # ------------------------------------------------------------
    # Users and permission bundles
    # ------------------------------------------------------------

    async def fetch_user_with_branch(self, user_id: str) -> Optional[UserRecord]:
        async def remote():
            result = await self.call_procedure(
                "get_user_with_branch_details", {"user_id": user_id}, returns_rows=True,
            )
            row = result.mappings().first()
            return UserRecord.from_mapping(dict(row)) if row else None

        async def fallback():
            user = await self.get(User, user_id, options=(selectinload(User.branch),))
            return UserRecord.from_user(user) if user else None

        return await RemoteProcedure("get_user_with_branch_details", self.procedures, remote, fallback).run()

    async def fetch_permission_bundles(self, names: Iterable[str]) -> List[PermissionBundle]:
        names = list(names)
        if not names:
            return []
        return await self.select(PermissionBundle, PermissionBundle.name.in_(names))

    # ------------------------------------------------------------
    # Task procedures
    # ------------------------------------------------------------

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        completion_date: Optional[datetime],
        expected_status: TaskStatus,
        user_id: str,
        notes: Optional[str],
    ) -> bool:
        """Compare-and-set the status and append the update_status log row.

        Returns False when the persisted status no longer equals
        ``expected_status``; nothing is written in that case.
        """

        async def remote():
            result = await self.call_procedure("update_task_status", {
                "p_task_id": task_id,
                "p_status": status.value,
                "p_completion_date": completion_date,
                "p_expected_status": expected_status.value,
                "p_user_id": user_id,
                "p_notes": notes,
            })
            updated = result.scalar() or 0
            await self.commit()
            return updated == 1

        async def fallback():
            values = {"status": status, "updated_at": utcnow()}
            if completion_date is not None:
                values["completion_date"] = completion_date
            matched = await self.update(
                Task,
                (Task.id == task_id, Task.status == expected_status, Task.is_active.is_(True)),
                values,
                commit=False,
            )
            if matched != 1:
                await self.rollback()
                return False
            await self.insert(TaskLog(
                task_id=task_id,
                user_id=user_id,
                action=TaskLogAction.UPDATE_STATUS,
                previous_status=expected_status,
                new_status=status,
                notes=notes,
            ), commit=False)
            await self.commit()
            return True

        return await RemoteProcedure("update_task_status", self.procedures, remote, fallback).run()

    async def add_task_comment(self, task_id: str, user_id: str, comment: str) -> None:
        async def remote():
            await self.call_procedure("add_task_comment", {
                "p_task_id": task_id, "p_user_id": user_id, "p_comment": comment,
            })
            await self.commit()

        async def fallback():
            await self.insert(TaskLog(
                task_id=task_id, user_id=user_id, action=TaskLogAction.COMMENT, notes=comment,
            ))

        await RemoteProcedure("add_task_comment", self.procedures, remote, fallback).run()

    async def save_task_time_record(self, task_id: str, user_id: str, duration: int, notes: Optional[str]) -> None:
        async def remote():
            await self.call_procedure("save_task_time_record", {
                "p_task_id": task_id, "p_user_id": user_id, "p_duration": duration, "p_notes": notes,
            })
            await self.commit()

        async def fallback():
            await self.insert(TaskLog(
                task_id=task_id,
                user_id=user_id,
                action=TaskLogAction.TIME_RECORD,
                notes=format_time_record(duration, notes),
            ))

        await RemoteProcedure("save_task_time_record", self.procedures, remote, fallback).run()


def format_time_record(duration: int, notes: Optional[str]) -> str:
    return f"{duration} seconds - {notes}" if notes else f"{duration} seconds"


def parse_time_record(notes: Optional[str]) -> Tuple[int, Optional[str]]:
    """Inverse of format_time_record; unparseable notes count as zero seconds"""
    if not notes:
        return 0, None
    head, _, rest = notes.partition(" seconds")
    try:
        duration = int(head)
    except ValueError:
        return 0, notes
    rest = rest[3:] if rest.startswith(" - ") else rest
    return duration, rest or None

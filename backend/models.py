# models.py - Database models for LetterDesk
# - UUID string primary keys everywhere
# - Two-tier role system (admin, user) with custom grants and role bundles
# - Soft deletes for tasks (is_active flag)
# - Append-only task logs and audit logs

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger,
    Enum as SQLEnum, ForeignKey, Text, Index,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def _enum_column(enum_cls):
    # Store enum values ("in_progress"), not member names, so stored procedures
    # and raw SQL see the same strings as the API.
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
    )


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"
    USER = "user"


class TaskStatus(str, PyEnum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    POSTPONED = "postponed"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskLogAction(str, PyEnum):
    CREATE = "create"
    UPDATE_STATUS = "update_status"
    UPDATE_DETAILS = "update_details"
    COMMENT = "comment"
    TIME_RECORD = "time_record"


class AuditEventType(str, PyEnum):
    USER_LOGIN = "auth.user.login"
    USER_CREATED = "auth.user.created"
    USER_PASSWORD_RESET = "auth.user.password_reset"
    USER_ROLE_CHANGED = "auth.user.role_changed"
    USER_PERMISSIONS_CHANGED = "auth.user.permissions_changed"
    USER_ACTIVATED = "auth.user.activated"
    USER_DEACTIVATED = "auth.user.deactivated"
    BUNDLE_CREATED = "auth.bundle.created"


# ============================================================
# BRANCHES
# ============================================================

class Branch(Base):
    __tablename__ = "branches"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    users = relationship("User", back_populates="branch")


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(_enum_column(UserRole), default=UserRole.USER, nullable=False, index=True)
    branch_id = Column(String, ForeignKey("branches.id"), nullable=True, index=True)
    # Custom grants: permission codes ("edit:tasks:own") or bundle references ("role:clerk")
    permissions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    branch = relationship("Branch", back_populates="users")

    __table_args__ = (
        Index("idx_user_branch_active", "branch_id", "is_active"),
    )


class PermissionBundle(Base):
    """Named role template that custom grants can reference"""
    __tablename__ = "user_roles"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# AUDIT LOGS (Append-only - never update or delete)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    event_type = Column(_enum_column(AuditEventType), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    request_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum_column(TaskStatus), default=TaskStatus.NEW, nullable=False, index=True)
    priority = Column(_enum_column(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)

    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    assigned_to = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    branch_id = Column(String, ForeignKey("branches.id"), nullable=True, index=True)

    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    completion_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    creator = relationship("User", foreign_keys=[created_by])
    assignee = relationship("User", foreign_keys=[assigned_to])
    branch = relationship("Branch")
    logs = relationship("TaskLog", back_populates="task", order_by="TaskLog.created_at.desc()")
    attachments = relationship("TaskAttachment", back_populates="task")

    __table_args__ = (
        Index("idx_task_creator_active", "created_by", "is_active"),
        Index("idx_task_assignee_active", "assigned_to", "is_active"),
        Index("idx_task_branch_status", "branch_id", "status"),
    )


class TaskLog(Base):
    """Append-only trail of task mutations"""
    __tablename__ = "task_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    action = Column(_enum_column(TaskLogAction), nullable=False, index=True)
    previous_status = Column(_enum_column(TaskStatus), nullable=True)
    new_status = Column(_enum_column(TaskStatus), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="logs")
    user = relationship("User")

    __table_args__ = (
        Index("idx_task_log_task_time", "task_id", "created_at"),
    )


class TaskAttachment(Base):
    """File attachment on a task; the blob lives in attachment storage"""
    __tablename__ = "task_attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_size = Column(BigInteger, default=0)
    file_type = Column(String, nullable=True)
    file_url = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=False)
    uploaded_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="attachments")
    uploader = relationship("User")

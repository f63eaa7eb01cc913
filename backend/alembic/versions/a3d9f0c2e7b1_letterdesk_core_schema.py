"""LetterDesk core schema: branches, users, permission bundles, tasks, logs, audit

Revision ID: a3d9f0c2e7b1
Revises:
Create Date: 2026-10-18 00:00:00.000000

Also installs the stored procedures the record store prefers when present:
- update_task_status (compare-and-set on the expected status + log row)
- add_task_comment
- save_task_time_record
- get_user_with_branch_details
The application falls back to plain table operations when they are missing,
so the procedures are PostgreSQL-only and skipped on other dialects.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a3d9f0c2e7b1'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UPDATE_TASK_STATUS = """
CREATE OR REPLACE FUNCTION update_task_status(
    p_task_id text,
    p_status text,
    p_completion_date timestamptz,
    p_expected_status text,
    p_user_id text,
    p_notes text
) RETURNS integer AS $$
DECLARE
    v_count integer;
BEGIN
    UPDATE tasks
       SET status = p_status,
           completion_date = COALESCE(p_completion_date, completion_date),
           updated_at = now()
     WHERE id = p_task_id
       AND status = p_expected_status
       AND is_active;
    GET DIAGNOSTICS v_count = ROW_COUNT;

    IF v_count = 1 THEN
        INSERT INTO task_logs (id, task_id, user_id, action, previous_status, new_status, notes, created_at)
        VALUES (gen_random_uuid()::text, p_task_id, p_user_id, 'update_status',
                p_expected_status, p_status, p_notes, now());
    END IF;

    RETURN v_count;
END;
$$ LANGUAGE plpgsql;
"""

ADD_TASK_COMMENT = """
CREATE OR REPLACE FUNCTION add_task_comment(
    p_task_id text,
    p_user_id text,
    p_comment text
) RETURNS void AS $$
    INSERT INTO task_logs (id, task_id, user_id, action, notes, created_at)
    VALUES (gen_random_uuid()::text, p_task_id, p_user_id, 'comment', p_comment, now());
$$ LANGUAGE sql;
"""

SAVE_TASK_TIME_RECORD = """
CREATE OR REPLACE FUNCTION save_task_time_record(
    p_task_id text,
    p_user_id text,
    p_duration integer,
    p_notes text
) RETURNS void AS $$
    INSERT INTO task_logs (id, task_id, user_id, action, notes, created_at)
    VALUES (
        gen_random_uuid()::text, p_task_id, p_user_id, 'time_record',
        p_duration || ' seconds' || CASE WHEN COALESCE(p_notes, '') = '' THEN '' ELSE ' - ' || p_notes END,
        now()
    );
$$ LANGUAGE sql;
"""

GET_USER_WITH_BRANCH_DETAILS = """
CREATE OR REPLACE FUNCTION get_user_with_branch_details(p_user_id text)
RETURNS TABLE (
    id text,
    email text,
    full_name text,
    role text,
    branch_id text,
    branch_name text,
    branch_code text,
    permissions json,
    is_active boolean,
    updated_at timestamptz
) AS $$
    SELECT u.id::text, u.email::text, u.full_name::text, u.role::text, u.branch_id::text,
           b.name::text, b.code::text, u.permissions, u.is_active, u.updated_at
      FROM users u
      LEFT JOIN branches b ON b.id = u.branch_id
     WHERE u.id = p_user_id;
$$ LANGUAGE sql STABLE;
"""

PROCEDURES = {
    'update_task_status': (UPDATE_TASK_STATUS, 'text, text, timestamptz, text, text, text'),
    'add_task_comment': (ADD_TASK_COMMENT, 'text, text, text'),
    'save_task_time_record': (SAVE_TASK_TIME_RECORD, 'text, text, integer, text'),
    'get_user_with_branch_details': (GET_USER_WITH_BRANCH_DETAILS, 'text'),
}


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == 'postgresql'


def upgrade() -> None:
    # ---- branches ----
    op.create_table(
        'branches',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_branches_code', 'branches', ['code'], unique=True)

    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False, server_default=''),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.String(length=5), nullable=False, server_default='user'),
        sa.Column('branch_id', sa.String(), sa.ForeignKey('branches.id'), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_branch_id', 'users', ['branch_id'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('idx_user_branch_active', 'users', ['branch_id', 'is_active'])

    # ---- user_roles (permission bundles) ----
    op.create_table(
        'user_roles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_roles_name', 'user_roles', ['name'], unique=True)

    # ---- audit_logs ----
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])

    # ---- tasks ----
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=11), nullable=False, server_default='new'),
        sa.Column('priority', sa.String(length=6), nullable=False, server_default='medium'),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('assigned_to', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('branch_id', sa.String(), sa.ForeignKey('branches.id'), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completion_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_created_by', 'tasks', ['created_by'])
    op.create_index('ix_tasks_assigned_to', 'tasks', ['assigned_to'])
    op.create_index('ix_tasks_branch_id', 'tasks', ['branch_id'])
    op.create_index('ix_tasks_due_date', 'tasks', ['due_date'])
    op.create_index('ix_tasks_is_active', 'tasks', ['is_active'])
    op.create_index('ix_tasks_created_at', 'tasks', ['created_at'])
    op.create_index('idx_task_creator_active', 'tasks', ['created_by', 'is_active'])
    op.create_index('idx_task_assignee_active', 'tasks', ['assigned_to', 'is_active'])
    op.create_index('idx_task_branch_status', 'tasks', ['branch_id', 'status'])

    # ---- task_logs ----
    op.create_table(
        'task_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('action', sa.String(length=14), nullable=False),
        sa.Column('previous_status', sa.String(length=11), nullable=True),
        sa.Column('new_status', sa.String(length=11), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_logs_task_id', 'task_logs', ['task_id'])
    op.create_index('ix_task_logs_action', 'task_logs', ['action'])
    op.create_index('idx_task_log_task_time', 'task_logs', ['task_id', 'created_at'])

    # ---- task_attachments ----
    op.create_table(
        'task_attachments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), server_default='0'),
        sa.Column('file_type', sa.String(), nullable=True),
        sa.Column('file_url', sa.String(), nullable=False),
        sa.Column('storage_path', sa.String(), nullable=False),
        sa.Column('uploaded_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_attachments_task_id', 'task_attachments', ['task_id'])

    # ---- stored procedures ----
    if _is_postgresql():
        for sql, _ in PROCEDURES.values():
            op.execute(sql)


def downgrade() -> None:
    if _is_postgresql():
        for name, (_, signature) in PROCEDURES.items():
            op.execute(f"DROP FUNCTION IF EXISTS {name}({signature})")

    op.drop_table('task_attachments')
    op.drop_table('task_logs')
    op.drop_table('tasks')
    op.drop_table('audit_logs')
    op.drop_table('user_roles')
    op.drop_table('users')
    op.drop_table('branches')

# routers/dashboard.py - Navigation and page payloads gated by the access guards
from typing import Optional

from fastapi import APIRouter, Depends, Request

from access_guard import InlineGuard, RouteGuard
from auth import get_optional_user, CurrentUser
from dependencies import get_query_service
from task_queries import TaskFilters, TaskQueryService
from routers.tasks import task_to_out

router = APIRouter(prefix="/api/v1/dashboard", tags=["Dashboard"])

TASKS_PAGE_PERMISSIONS = ("view:tasks", "view:tasks:assigned", "view:tasks:own")

tasks_page_guard = RouteGuard(
    TASKS_PAGE_PERMISSIONS,
    fallback_view={
        "title": "Access denied",
        "message": "You do not have the permissions required to view tasks.",
        "action": {"label": "Back to dashboard", "href": "/admin"},
    },
)


@router.get("/navigation")
async def navigation(
    request: Request,
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    """Navigation entries the current session may see"""
    menu = request.app.state.navigation
    entries = menu.visible(user.grants if user else None, viewer=user.id if user else None)
    return {"items": [entry.to_dict() for entry in entries]}


@router.get("/tasks")
async def tasks_page(
    request: Request,
    branch_id: Optional[str] = None,
    user: CurrentUser = Depends(tasks_page_guard),
    queries: TaskQueryService = Depends(get_query_service),
):
    """Task page payload: summary, first page of tasks and the actions the user may take"""
    requester = user.requester
    summary = await queries.summarize(requester, branch_id)
    tasks = await queries.list(TaskFilters(branch_id=branch_id, limit=20), requester)

    guards = request.app.state.task_page_guards
    actions = {
        name: guard.render(user.grants, True, viewer=user.id) or False
        for name, guard in guards.items()
    }
    return {
        "summary": summary.to_dict(),
        "tasks": [task_to_out(t) for t in tasks],
        "actions": actions,
    }


def build_task_page_guards(notifier) -> dict:
    """Inline guards for the task page action buttons"""
    return {
        "create_task": InlineGuard(
            ("create:tasks", "create:tasks:own"),
            fallback=False,
            notifier=notifier,
            message="Task creation is not available for this account",
        ),
        "assign_tasks": InlineGuard(("assign:tasks",), fallback=False),
        "delete_tasks": InlineGuard(("delete:tasks", "delete:tasks:own"), fallback=False),
    }

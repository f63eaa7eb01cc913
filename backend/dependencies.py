# dependencies.py - Per-request construction of the core services
#
# Process-wide state (procedure capability cache, permission cache, blob
# storage, notifier) lives on app.state; everything else is built per request
# around the request's database session.

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from permissions import PermissionResolver
from storage import BlobStorage
from store import RecordStore
from task_lifecycle import TaskLifecycleController
from task_queries import TaskQueryService


async def get_store(request: Request, db: AsyncSession = Depends(get_db_session)) -> RecordStore:
    return RecordStore(db, procedures=request.app.state.procedures)


async def get_resolver(request: Request, store: RecordStore = Depends(get_store)) -> PermissionResolver:
    return PermissionResolver(store, cache=request.app.state.permission_cache)


def get_blob_storage(request: Request) -> BlobStorage:
    return request.app.state.blob_storage


async def get_controller(
    store: RecordStore = Depends(get_store),
    blob_storage: BlobStorage = Depends(get_blob_storage),
) -> TaskLifecycleController:
    return TaskLifecycleController(store, blob_storage=blob_storage)


async def get_query_service(store: RecordStore = Depends(get_store)) -> TaskQueryService:
    return TaskQueryService(store)

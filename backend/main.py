# main.py - LetterDesk API
# Features:
# - Request correlation IDs and timing
# - Security headers
# - Domain error -> JSON response mapping
# - Route guard denials rendered as login / redirect / fallback responses
# - Health check with DB verification

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from access_guard import GuardOutcome, LoggingNotifier, NavigationMenu, RouteDenied
from database import init_db, close_db, get_db_context
from errors import TaskDeskError
from permissions import PermissionCache
from rpc import ProcedureRegistry
from seed import BOOTSTRAP_ADMIN_EMAIL, BOOTSTRAP_ADMIN_PASSWORD, seed_from_env
from storage import LocalBlobStorage, ATTACHMENT_STORAGE_ROOT, ATTACHMENT_PUBLIC_URL

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("letterdesk")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting LetterDesk v{VERSION}...")
    await init_db()
    if BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD:
        try:
            await seed_from_env()
        except ValueError as e:
            logger.error(f"Bootstrap admin not created: {e}")
    yield
    logger.info("Shutting down LetterDesk...")
    await close_db()


app = FastAPI(
    title="LetterDesk",
    description="Letter and task dashboard: permission resolution and task lifecycle",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Process-wide collaborators shared by every request
app.state.procedures = ProcedureRegistry()
app.state.permission_cache = PermissionCache()
app.state.blob_storage = LocalBlobStorage(ATTACHMENT_STORAGE_ROOT, ATTACHMENT_PUBLIC_URL)
app.state.notifier = LoggingNotifier()
app.state.navigation = NavigationMenu()

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


# ============================================================
# MIDDLEWARE: Request IDs + Timing
# ============================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(TaskDeskError)
async def domain_exception_handler(request: Request, exc: TaskDeskError):
    if exc.retryable:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.url.path}: {exc.message}")
    content = exc.to_dict()
    content["request_id"] = _request_id(request)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RouteDenied)
async def route_denied_handler(request: Request, exc: RouteDenied):
    decision = exc.decision
    if decision.outcome is GuardOutcome.REDIRECT:
        return RedirectResponse(decision.location, status_code=303)

    content = {
        "detail": "Authentication required" if decision.outcome is GuardOutcome.LOGIN else "Access denied",
        "outcome": decision.outcome.value,
        "required": exc.required,
        "request_id": _request_id(request),
    }
    if decision.outcome is GuardOutcome.LOGIN:
        content["redirect_to"] = decision.location
        return JSONResponse(status_code=401, content=content)
    content["fallback"] = decision.fallback
    return JSONResponse(status_code=403, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": _request_id(request),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": _request_id(request),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, users, tasks, dashboard

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(tasks.router)
app.include_router(dashboard.router)

app.state.task_page_guards = dashboard.build_task_page_guards(app.state.notifier)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
            db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "stored_procedures": app.state.procedures.snapshot(),
    }


@app.get("/")
async def root():
    return {
        "name": "LetterDesk",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )

import asyncio
import os
import platform
import resource
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from lunasphere.auth.router import router as auth_router
from lunasphere.base_service import BaseService, configure_logging, utcnow
from lunasphere.config import Settings
from lunasphere.dependencies import AppServices
from lunasphere.error_handling import register_exception_handlers
from lunasphere.errors import LunaSphereError
from lunasphere.site.mailer import Mailer
from lunasphere.site.router import router as site_router
from lunasphere.storage import Storage, create_storage

base_service = BaseService("main")

# Paths never counted as page views
UNTRACKED_PREFIXES = ("/api", "/health", "/uploads", "/docs", "/redoc", "/openapi.json")

ENDPOINTS = {
    "login": "POST /api/login",
    "signup": "POST /api/users",
    "refresh": "POST /api/refresh",
    "logout": "POST /api/logout",
    "logoutAll": "POST /api/logout-all",
    "me": "GET /api/me",
    "users": "GET /api/users",
    "userCount": "GET /api/users/count",
    "setRoles": "PUT /api/users/:username/roles",
    "addRole": "POST /api/users/:username/roles",
    "removeRole": "DELETE /api/users/:username/roles/:role",
    "checkRole": "POST /api/users/:username/check-role",
    "setStatus": "PUT /api/users/:username/status",
    "roles": "GET /api/roles",
    "analytics": "GET /api/analytics",
    "visitors": "GET /api/visitors",
    "contact": "POST /api/contact",
    "services": "GET /api/services",
    "health": "GET /health",
    "healthDetailed": "GET /health/detailed",
    "version": "GET /api/version",
}


def is_page_view(request: Request) -> bool:
    path = request.url.path
    if request.method != "GET" or path.startswith(UNTRACKED_PREFIXES):
        return False
    return "." not in path.rsplit("/", 1)[-1]


def system_info() -> Dict[str, Any]:
    # ru_maxrss is kilobytes on Linux
    peak_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return {
        "memory": {"maxRss": f"{round(peak_kb / 1024)}MB"},
        "process": {
            "pid": os.getpid(),
            "python": platform.python_version(),
            "platform": sys.platform,
            "arch": platform.machine(),
        },
    }


async def run_cleanup(services: AppServices) -> Dict[str, int]:
    """One housekeeping pass over visitors, refresh tokens and contact cooldowns."""
    result = {
        "visitors": await services.analytics.cleanup(),
        "refresh_tokens": await services.token_store.purge_expired(),
        "contact_cooldowns": services.contact.cleanup(),
    }
    if any(result.values()):
        base_service.log_event("cleanup.completed", result)
    return result


async def cleanup_loop(services: AppServices, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_cleanup(services)
        except Exception as e:
            # Keep the loop alive; the next pass retries.
            base_service.log_error(e, "periodic cleanup")


async def startup(app: FastAPI) -> None:
    """Open storage, create the bootstrap admin and start housekeeping."""
    services: AppServices = app.state.services
    settings = services.settings
    await services.storage.open()
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)

    if await services.users.ensure_admin(settings.admin_username, settings.admin_password):
        base_service.log_event("admin.created", {"username": settings.admin_username})
        if settings.admin_password == "admin123":
            base_service.logger.warning(
                "Bootstrap admin '%s' uses the default password; change ADMIN_PASSWORD",
                settings.admin_username,
            )

    app.state.cleanup_task = asyncio.create_task(
        cleanup_loop(services, settings.cleanup_interval_seconds)
    )
    base_service.log_event("service.startup", {
        "environment": settings.app_env,
        "storage": settings.storage_backend,
        "version": settings.version,
    })


async def shutdown(app: FastAPI) -> None:
    task: Optional[asyncio.Task] = getattr(app.state, "cleanup_task", None)
    try:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                base_service.log_error(e, "cleanup task")
            app.state.cleanup_task = None
    finally:
        await app.state.services.storage.close()
    base_service.log_event("service.shutdown", {})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to Settings.from_env()
        storage: Defaults to the backend named in settings
        mailer: Defaults to an SMTP mailer built from settings
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="LunaSphere API",
        description="Backend for the LunaSphere marketing site",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.services = AppServices(settings, storage or create_storage(settings), mailer)

    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials="*" not in settings.cors_origin_list,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def track_visitors(request: Request, call_next):
        if is_page_view(request):
            ip = request.client.host if request.client else "unknown"
            user_agent = request.headers.get("user-agent", "unknown")
            try:
                await app.state.services.analytics.record_page_view(ip, user_agent, request.url.path)
            except LunaSphereError as e:
                base_service.log_error(e, f"visitor tracking for {request.url.path}")
        return await call_next(request)

    app.include_router(auth_router, prefix="/api")
    app.include_router(site_router, prefix="/api")

    @app.get("/api", tags=["root"])
    async def api_info() -> Dict[str, Any]:
        """API information and endpoint map."""
        return base_service.success_response(
            f"LunaSphere API v{settings.version}",
            version=settings.version,
            timestamp=utcnow().isoformat(),
            endpoints=ENDPOINTS,
        )

    @app.get("/health", tags=["health"])
    async def health_check() -> Dict[str, Any]:
        """Overall system health check."""
        services: AppServices = app.state.services
        return {
            "status": "OK",
            "timestamp": utcnow().isoformat(),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
            "environment": settings.app_env,
            "version": settings.version,
            "users": await services.users.count(),
            "visitors": await services.analytics.visitor_count(),
        }

    @app.get("/health/detailed", tags=["health"])
    async def detailed_health_check() -> Dict[str, Any]:
        """Health check plus process memory and runtime details."""
        return {
            "status": "OK",
            "timestamp": utcnow().isoformat(),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
            "environment": settings.app_env,
            "system": system_info(),
        }

    @app.get("/api/version", tags=["root"])
    async def api_version() -> Dict[str, Any]:
        """Package name, version and runtime."""
        return base_service.success_response(data={
            "name": "lunasphere",
            "version": settings.version,
            "description": app.description,
            "python": platform.python_version(),
            "environment": settings.app_env,
        })

    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")
    if settings.static_dir:
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")

    return app


app = create_app()

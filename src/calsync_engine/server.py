import logging
from typing import Dict, Optional

from fastapi import FastAPI, Query, Response
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .connection_service import ConnectionService
from .database import DatabaseManager
from .exceptions import ConnectionNotFoundError, CredentialExpiredError, ValidationError
from .models import Provider
from .notifications import Notifier
from .scheduler import DerivedEventsJob, Scheduler
from .services import BaseProviderAdapter, ProviderAdapterFactory
from .sync_engine import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Wires the engine components for one process."""

    def __init__(
        self,
        settings: Settings,
        adapter_overrides: Optional[Dict[Provider, BaseProviderAdapter]] = None,
        notifier: Optional[Notifier] = None,
        derived_events_job: Optional[DerivedEventsJob] = None,
    ):
        self.settings = settings
        self.db_manager = DatabaseManager(settings)
        self.db_manager.init_db()
        self.adapters = ProviderAdapterFactory(settings, adapter_overrides)
        self.orchestrator = SyncOrchestrator(settings, self.db_manager, self.adapters)
        self.scheduler = Scheduler(
            settings, self.db_manager, self.orchestrator, self.adapters,
            derived_events_job=derived_events_job,
        )
        self.service = ConnectionService(
            settings, self.db_manager, self.orchestrator, self.adapters, notifier=notifier
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.adapters.aclose()
        self.db_manager.dispose()


def create_app(
    settings: Optional[Settings] = None,
    adapter_overrides: Optional[Dict[Provider, BaseProviderAdapter]] = None,
    notifier: Optional[Notifier] = None,
    derived_events_job: Optional[DerivedEventsJob] = None,
) -> FastAPI:
    app = FastAPI(title="CalSync Engine", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        runtime = SyncRuntime(
            settings or load_settings(),
            adapter_overrides=adapter_overrides,
            notifier=notifier,
            derived_events_job=derived_events_job,
        )
        app.state.runtime = runtime
        if runtime.settings.scheduler_enabled:
            runtime.scheduler.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        runtime: SyncRuntime = app.state.runtime
        await runtime.close()

    @app.exception_handler(ConnectionNotFoundError)
    async def not_found(request, exc: ConnectionNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid(request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(CredentialExpiredError)
    async def expired(request, exc: CredentialExpiredError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    async def health():
        rt: SyncRuntime = app.state.runtime
        return {
            "ok": True,
            "scheduler_running": rt.scheduler.running,
            "last_runs": {name: at.isoformat() for name, at in rt.scheduler.last_runs.items()},
        }

    @app.get("/connections")
    async def list_connections(user_id: str = Query(...), include_inactive: bool = False):
        return app.state.runtime.service.list_connections(user_id, active_only=not include_inactive)

    @app.get("/connections/{connection_id}/logs")
    async def sync_logs(connection_id: str, user_id: str = Query(...), limit: int = Query(50, ge=1, le=500)):
        return app.state.runtime.service.sync_logs(connection_id, user_id, limit)

    @app.post("/connections/{connection_id}/sync")
    async def manual_sync(connection_id: str, user_id: str = Query(...)):
        log = await app.state.runtime.service.manual_sync(connection_id, user_id)
        return log.to_dict()

    @app.post("/connections/{connection_id}/reset")
    async def reset_errors(connection_id: str, user_id: str = Query(...)):
        return app.state.runtime.service.reset_errors(connection_id, user_id)

    @app.post("/connections/{connection_id}/disconnect")
    async def disconnect(connection_id: str, user_id: str = Query(...)):
        app.state.runtime.service.disconnect(connection_id, user_id)
        return Response(status_code=204)

    @app.post("/connections/{connection_id}/test")
    async def test_connection(connection_id: str, user_id: str = Query(...)):
        return await app.state.runtime.service.test_connection(connection_id, user_id)

    return app


app = create_app()

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from switchboard.core.clients.http import close_http_client, init_http_client
from switchboard.core.config.settings import get_settings
from switchboard.core.config.startup_log import log_startup_config
from switchboard.core.errors import RoutingError, dashboard_error, routing_error_payload
from switchboard.core.utils.request_id import get_request_id, reset_request_id, set_request_id
from switchboard.dependencies import Services
from switchboard.modules.accounts.auth_manager import AuthManager
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.health import api as health_api
from switchboard.modules.metrics import api as metrics_api
from switchboard.modules.proxy.account_manager import AccountManager
from switchboard.modules.proxy.account_selector import AccountSelector
from switchboard.modules.proxy.providers import ProviderRegistry
from switchboard.modules.proxy.router import Router
from switchboard.modules.proxy.sticky import FlowCursorStore
from switchboard.modules.routing import api as routing_api
from switchboard.modules.routing.model_sync import ModelSyncService
from switchboard.modules.routing.models import ModelCatalog
from switchboard.modules.routing.repository import RoutingConfigRepository
from switchboard.modules.routing.service import RoutingService

logger = logging.getLogger(__name__)


def build_services(providers: ProviderRegistry | None = None) -> Services:
    settings = get_settings()

    store = AccountStore(settings.accounts_dir)
    store.load()
    manager = AccountManager(store, AuthManager(store))
    selector = AccountSelector(store, manager)
    catalog = ModelCatalog()
    repository = RoutingConfigRepository(settings.routing_config_path)
    repository.load()
    registry = providers or ProviderRegistry()
    cursors = FlowCursorStore()
    router = Router(
        config_repository=repository,
        store=store,
        selector=selector,
        manager=manager,
        providers=registry,
        catalog=catalog,
        cursors=cursors,
    )
    return Services(
        store=store,
        manager=manager,
        selector=selector,
        routing=RoutingService(
            repository,
            store,
            selector,
            catalog,
            model_sync=ModelSyncService(store, registry, catalog),
            cursors=cursors,
        ),
        router=router,
    )


def create_app(*, providers: ProviderRegistry | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_startup_config()
        await init_http_client()
        app.state.services = build_services(providers)
        logger.info(
            "switchboard_started accounts_dir=%s routing_config=%s",
            get_settings().accounts_dir,
            get_settings().routing_config_path,
        )
        try:
            yield
        finally:
            await close_http_client()

    app = FastAPI(title="switchboard", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        inbound_request_id = request.headers.get("x-request-id") or request.headers.get("request-id")
        request_id = inbound_request_id or str(uuid4())
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers.setdefault("x-request-id", request_id)
        return response

    @app.middleware("http")
    async def api_unhandled_error_middleware(request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception:
            if request.url.path.startswith("/api/"):
                logger.exception("Unhandled API error request_id=%s", get_request_id())
                return JSONResponse(
                    status_code=500,
                    content=dashboard_error("internal_error", "Unexpected error"),
                )
            raise

    @app.exception_handler(RoutingError)
    async def _routing_error_handler(_: Request, exc: RoutingError) -> Response:
        return JSONResponse(status_code=exc.status_code, content=routing_error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            return JSONResponse(
                status_code=422,
                content=dashboard_error("validation_error", "Invalid request payload"),
            )
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
            return JSONResponse(
                status_code=exc.status_code,
                content=dashboard_error(f"http_{exc.status_code}", detail),
            )
        return await http_exception_handler(request, exc)

    app.include_router(routing_api.router)
    app.include_router(health_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()

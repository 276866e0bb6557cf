from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from switchboard.core.errors import dashboard_error
from switchboard.dependencies import RoutingContext, get_routing_context
from switchboard.modules.routing.schemas import (
    ActiveFlowRequest,
    RoutingCleanupResponse,
    RoutingConfigResponse,
    RoutingConfigSaveResponse,
    RoutingConfigUpdateRequest,
)

router = APIRouter(prefix="/api/routing", tags=["routing"])


@router.get("/config", response_model=RoutingConfigResponse)
async def get_routing_config(
    context: RoutingContext = Depends(get_routing_context),
) -> RoutingConfigResponse:
    service = context.service
    await service.refresh_models()
    return RoutingConfigResponse(
        config=service.get_config(),
        accounts=service.list_accounts(),
        models=service.list_models(),
    )


@router.post("/config", response_model=RoutingConfigSaveResponse)
async def save_routing_config(
    payload: RoutingConfigUpdateRequest = Body(...),
    context: RoutingContext = Depends(get_routing_context),
) -> RoutingConfigSaveResponse | JSONResponse:
    try:
        config = await context.service.save_config(payload)
    except ValueError as exc:
        return JSONResponse(status_code=400, content=dashboard_error("invalid_routing_config", str(exc)))
    return RoutingConfigSaveResponse(config=config)


@router.post("/active-flow", response_model=RoutingConfigSaveResponse)
async def set_active_flow(
    payload: ActiveFlowRequest = Body(...),
    context: RoutingContext = Depends(get_routing_context),
) -> RoutingConfigSaveResponse | JSONResponse:
    try:
        config = await context.service.set_active_flow(payload.flow_id)
    except ValueError as exc:
        return JSONResponse(status_code=400, content=dashboard_error("unknown_flow", str(exc)))
    return RoutingConfigSaveResponse(config=config)


@router.post("/cleanup", response_model=RoutingCleanupResponse)
async def cleanup_routing(
    context: RoutingContext = Depends(get_routing_context),
) -> RoutingCleanupResponse:
    result = await context.service.cleanup_stale()
    return RoutingCleanupResponse(removed_count=result.removed_count, config=result.config)

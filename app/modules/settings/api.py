from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from app.core.errors import dashboard_error
from app.dependencies import SettingsContext, get_settings_context, require_authenticated
from app.modules.settings.schemas import GatewayConfigResponse, GatewayConfigUpdateRequest
from app.modules.settings.service import GatewayConfigData

router = APIRouter(prefix="/api/config", tags=["dashboard"], dependencies=[Depends(require_authenticated)])


def _to_response(config: GatewayConfigData) -> GatewayConfigResponse:
    return GatewayConfigResponse(
        proxy=config.proxy,
        image_base_url=config.image_base_url,
        upload_endpoint=config.upload_endpoint,
        upload_api_token=config.upload_api_token,
        upload_configured=config.upload_configured,
    )


@router.get("", response_model=GatewayConfigResponse)
async def get_config(
    context: SettingsContext = Depends(get_settings_context),
) -> GatewayConfigResponse:
    return _to_response(await context.service.get_config())


@router.put("", response_model=GatewayConfigResponse)
async def update_config(
    payload: GatewayConfigUpdateRequest = Body(...),
    context: SettingsContext = Depends(get_settings_context),
) -> GatewayConfigResponse | JSONResponse:
    changes = {field: getattr(payload, field) for field in payload.model_fields_set}
    try:
        updated = await context.service.update_config(changes)
    except ValueError as exc:
        return JSONResponse(status_code=400, content=dashboard_error("invalid_config", str(exc)))
    return _to_response(updated)

from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from app.core.clients.upload import UploadError, compose_image_url, upload_image
from app.core.errors import dashboard_error
from app.dependencies import ImagesContext, get_images_context, require_authenticated
from app.modules.images.resolver import DEFAULT_IMAGE_FILENAME, UploadTarget
from app.modules.images.schemas import UploadTestResponse

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.post(
    "/upload/test",
    response_model=UploadTestResponse,
    dependencies=[Depends(require_authenticated)],
)
async def upload_test(
    file: UploadFile | None = File(default=None),
    context: ImagesContext = Depends(get_images_context),
) -> UploadTestResponse | JSONResponse:
    config = await context.settings.get_config()
    target = UploadTarget.from_values(config.upload_endpoint, config.upload_api_token, config.image_base_url)
    if target is None:
        return JSONResponse(
            status_code=400,
            content=dashboard_error("upload_not_configured", "Upload endpoint and API token are not configured"),
        )
    if file is None:
        return JSONResponse(status_code=400, content=dashboard_error("file_required", "No file provided"))

    data = await file.read()
    filename = file.filename or DEFAULT_IMAGE_FILENAME
    mime_type = file.content_type or "application/octet-stream"
    try:
        result = await upload_image(target.endpoint, target.api_token, data, filename, mime_type)
    except UploadError as exc:
        return JSONResponse(status_code=502, content=dashboard_error("upload_failed", exc.message))

    return UploadTestResponse(
        success=True,
        src=result.src,
        url=compose_image_url(result.src, upload_endpoint=target.endpoint, image_base_url=target.image_base_url),
        filename=filename,
        size=len(data),
    )

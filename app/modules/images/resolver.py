from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import AsyncContextManager

from app.core.clients.upload import UploadResult, compose_image_url, upload_image
from app.core.clients.upstream import UpstreamImage
from app.core.metrics import get_metrics
from app.core.openai.chat_responses import ChatImageArtifact
from app.core.utils.request_id import get_request_id
from app.modules.images.repository import ImageCacheRepository

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_FILENAME = "image.png"

ImageRepoFactory = Callable[[], AsyncContextManager[ImageCacheRepository]]
Uploader = Callable[[str, str, bytes, str, str], Awaitable[UploadResult]]


@dataclass(frozen=True, slots=True)
class UploadTarget:
    endpoint: str
    api_token: str
    image_base_url: str | None = None

    @classmethod
    def from_values(
        cls,
        endpoint: str | None,
        api_token: str | None,
        image_base_url: str | None = None,
    ) -> UploadTarget | None:
        endpoint = (endpoint or "").strip()
        api_token = (api_token or "").strip()
        if not endpoint or not api_token:
            return None
        return cls(endpoint=endpoint, api_token=api_token, image_base_url=(image_base_url or "").strip() or None)


class ImageArtifactResolver:
    """Turns generated image bytes into artifacts a client can reference.

    With an upload target the bytes go to the external image host and the artifact carries an absolute URL;
    otherwise they are written to the image cache and only the cache id is returned.
    """

    def __init__(self, repo_factory: ImageRepoFactory, *, uploader: Uploader | None = None) -> None:
        self._repo_factory = repo_factory
        self._uploader = uploader

    async def resolve(self, image: UpstreamImage, target: UploadTarget | None) -> ChatImageArtifact:
        filename = image.file_name or DEFAULT_IMAGE_FILENAME
        if target is not None:
            uploader = self._uploader or upload_image
            result = await uploader(target.endpoint, target.api_token, image.data, filename, image.mime_type)
            url = compose_image_url(
                result.src,
                upload_endpoint=target.endpoint,
                image_base_url=target.image_base_url,
            )
            get_metrics().observe_image_artifact("upload")
            return ChatImageArtifact(id=result.src, filename=filename, mime_type=image.mime_type, url=url)

        async with self._repo_factory() as repo:
            image_id = await repo.save(image.data, mime_type=image.mime_type, filename=filename)
        get_metrics().observe_image_artifact("cache")
        return ChatImageArtifact(id=image_id, filename=filename, mime_type=image.mime_type)

    async def resolve_all(
        self,
        images: Sequence[UpstreamImage],
        target: UploadTarget | None,
    ) -> list[ChatImageArtifact]:
        artifacts: list[ChatImageArtifact] = []
        for image in images:
            try:
                artifacts.append(await self.resolve(image, target))
            except Exception:
                get_metrics().observe_image_failure()
                logger.warning(
                    "Skipping generated image request_id=%s filename=%s mime_type=%s",
                    get_request_id(),
                    image.file_name,
                    image.mime_type,
                    exc_info=True,
                )
        return artifacts

from __future__ import annotations

from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CachedImage


def new_image_id() -> str:
    return f"img_{uuid4().hex}"


class ImageCacheRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, data: bytes, *, mime_type: str, filename: str) -> str:
        image = CachedImage(id=new_image_id(), data=data, mime_type=mime_type, filename=filename)
        self._session.add(image)
        await self._session.commit()
        return image.id

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GatewayConfig

_CONFIG_ID = 1

_UNSET = object()


class SettingsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_or_create(self) -> GatewayConfig:
        existing = await self._session.get(GatewayConfig, _CONFIG_ID)
        if existing is not None:
            return existing

        row = GatewayConfig(id=_CONFIG_ID)
        self._session.add(row)
        await self._session.commit()
        await self._session.refresh(row)
        return row

    async def update(
        self,
        *,
        proxy: str | None | object = _UNSET,
        image_base_url: str | None | object = _UNSET,
        upload_endpoint: str | None | object = _UNSET,
        upload_api_token: str | None | object = _UNSET,
    ) -> GatewayConfig:
        config = await self.get_or_create()
        if proxy is not _UNSET:
            config.proxy = proxy
        if image_base_url is not _UNSET:
            config.image_base_url = image_base_url
        if upload_endpoint is not _UNSET:
            config.upload_endpoint = upload_endpoint
        if upload_api_token is not _UNSET:
            config.upload_api_token = upload_api_token
        await self._session.commit()
        await self._session.refresh(config)
        return config

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, LargeBinary, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    team_id: Mapped[str] = mapped_column(String, nullable=False)

    secure_c_ses_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    host_c_oses_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    csesidx: Mapped[str] = mapped_column(String, nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)

    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    unavailable_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (Index("idx_accounts_available_created", "available", "created_at"),)


class PoolState(Base):
    __tablename__ = "pool_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cursor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Bumped by every cursor advance and availability change; selections commit only against the version they read.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class CachedImage(Base):
    __tablename__ = "image_cache"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class GatewayConfig(Base):
    __tablename__ = "gateway_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    proxy: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    upload_endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    upload_api_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

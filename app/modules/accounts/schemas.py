from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
)


class AccountImportEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    team_id: str = Field(min_length=1)
    secure_c_ses: str = Field(min_length=1)
    host_c_oses: str | None = None
    csesidx: str = Field(min_length=1)
    user_agent: str = DEFAULT_USER_AGENT
    available: bool = True

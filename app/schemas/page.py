from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PageBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_url: str = Field(alias="pageUrl", min_length=1, max_length=255)
    page_description: str | None = Field(default=None, alias="pageDescription")
    content: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("page_url", mode="after")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        normalized = v.strip().strip("/")
        if not normalized:
            raise ValueError("pageUrl cannot be empty")
        return normalized


class PageCreate(PageBase):
    pass


class PageRead(BaseModel):
    """Serialized with ``by_alias=True`` to keep the camelCase wire names."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    page_url: str = Field(serialization_alias="pageUrl")
    page_description: str | None = Field(default=None, serialization_alias="pageDescription")
    content: list[dict[str, Any]]
    created_at: datetime | None = Field(default=None, serialization_alias="createdAt")
    updated_at: datetime | None = Field(default=None, serialization_alias="updatedAt")

    @classmethod
    def dump(cls, page: Any) -> dict[str, Any]:
        return cls.model_validate(page).model_dump(mode="json", by_alias=True)


class SlugRequest(BaseModel):
    slug: str = Field(min_length=1)


class ExternalRequest(BaseModel):
    """Every external call carries the shared secret in its body."""

    model_config = ConfigDict(populate_by_name=True)

    external_api_secret: str | None = Field(default=None, alias="EXTERNAL_API_SECRET")


class ExternalPageCreate(ExternalRequest, PageBase):
    pass


class ExternalPageIdRequest(ExternalRequest):
    page_id: str = Field(alias="pageId", min_length=1)


class ExternalInsertPageRequest(ExternalRequest):
    page_data: PageBase = Field(alias="pageData")

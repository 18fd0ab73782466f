"""Pydantic models for LinkPeek API contracts."""

from __future__ import annotations

from pydantic import BaseModel, StrictStr

from linkpeek.unfurl import UnfurlResult


class UnfurlRequest(BaseModel):
    url: StrictStr


class UnfurlResponse(BaseModel):
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    site_name: str | None = None
    url: str

    @classmethod
    def from_result(cls, result: UnfurlResult) -> UnfurlResponse:
        return cls(**result.to_dict())


class HealthResponse(BaseModel):
    status: str = "ok"

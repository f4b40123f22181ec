"""
Shared Schemas

Base model and envelopes used across routers. Payloads use camelCase on the
wire and accept either casing on input.
"""

from typing import Generic, List, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


T = TypeVar("T")


class CamelModel(BaseModel):
    """Base for all request/response bodies."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class MessageResponse(CamelModel):
    """Simple message response."""

    message: str


class PageResponse(CamelModel, Generic[T]):
    """One page of a listing."""

    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int

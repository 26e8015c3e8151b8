"""
Pydantic models for the remote email API (domains, addresses, webhooks).

The remote service wraps successful responses as {"success": true, "data": ...}
and failures as {"error": "...", "code": "..."}. List endpoints are paginated
with limit/offset and report {total, limit, offset, hasMore}.
"""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorEnvelope(BaseModel):
    model_config = {"extra": "ignore"}

    error: str
    code: Optional[str] = None


class Page(BaseModel, Generic[T]):
    """One page of a limit/offset listing."""
    model_config = {"populate_by_name": True}

    items: list[T] = []
    total: int = 0
    limit: int
    offset: int = 0
    has_more: bool = Field(default=False, alias="hasMore")


class Domain(BaseModel):
    model_config = {"extra": "ignore"}

    id: str
    name: str
    status: Optional[str] = None
    created_at: Optional[str] = None


class EmailAddress(BaseModel):
    model_config = {"extra": "ignore"}

    id: str
    address: str
    domain_id: Optional[str] = None
    created_at: Optional[str] = None


class WebhookRegistration(BaseModel):
    model_config = {"extra": "ignore"}

    id: str
    url: str
    events: list[str] = []
    enabled: bool = True
    created_at: Optional[str] = None


class CreateEmailAddressRequest(BaseModel):
    address: str
    domain_id: Optional[str] = None


class CreateWebhookRequest(BaseModel):
    url: str
    events: list[str] = ["email.received"]

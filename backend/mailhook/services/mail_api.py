"""
Client for the remote email API (domains, email addresses, webhooks).

Every request runs through the retry client and, when one is supplied, a
circuit breaker. Error envelopes ({"error": ..., "code": ...}) are raised as
ApiError; a 4xx ApiError is not retried, 5xx and transport errors are.

Environment variables
---------------------
MAIL_API_BASE_URL   Base URL of the remote API, e.g. https://api.example.com/v1
MAIL_API_KEY        Bearer token.
RETRY_*             See mailhook.services.retry.
"""

import logging
import os
from typing import Any, Iterator, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from mailhook.models.mail_api import (
    CreateEmailAddressRequest,
    CreateWebhookRequest,
    Domain,
    EmailAddress,
    ErrorEnvelope,
    Page,
    WebhookRegistration,
)
from mailhook.services.circuit_breaker import CircuitBreaker
from mailhook.services.retry import RetryPolicy, execute

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_PAGE_SIZE = 20


class ApiError(Exception):
    """Error envelope returned by the remote API."""

    def __init__(self, status_code: int, error: str, code: Optional[str] = None):
        self.status_code = status_code
        self.error = error
        self.code = code
        suffix = f" [{code}]" if code else ""
        super().__init__(f"HTTP {status_code}: {error}{suffix}")


class MailApiClient:
    """
    Thin synchronous client for the remote email API.

    Example:
        with MailApiClient.from_env() as api:
            page = api.list_webhooks(limit=50)
            for hook in page.items:
                print(hook.url)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.breaker = breaker
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls, breaker: Optional[CircuitBreaker] = None) -> "MailApiClient":
        base_url = os.getenv("MAIL_API_BASE_URL", "").strip()
        api_key = os.getenv("MAIL_API_KEY", "").strip()
        if not base_url or not api_key:
            raise ValueError("MAIL_API_BASE_URL and MAIL_API_KEY must be set in environment variables")
        return cls(base_url, api_key, policy=RetryPolicy.from_env(), breaker=breaker)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MailApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        """Return the decoded JSON body of a 2xx response or raise ApiError."""
        if response.is_success:
            if not response.content:
                return None
            return response.json()

        try:
            envelope = ErrorEnvelope.model_validate(response.json())
            error, code = envelope.error, envelope.code
        except (ValueError, ValidationError):
            error, code = response.text or response.reason_phrase, None
        raise ApiError(response.status_code, error, code)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        def attempt() -> Any:
            return self._parse(self._client.request(method, path, **kwargs))

        if self.breaker is None:
            return execute(attempt, self.policy)
        return execute(lambda: self.breaker.call(attempt), self.policy)

    @staticmethod
    def _data(body: Any) -> Any:
        # Success envelope: {"success": true, "data": ...}
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def _list(self, path: str, model: Type[M], limit: int, offset: int, **params) -> Page[M]:
        query = {"limit": limit, "offset": offset}
        query.update({k: v for k, v in params.items() if v is not None})
        body = self._request("GET", path, params=query) or {}

        items = [model.model_validate(item) for item in self._data(body) or []]
        # Pagination metadata sits either at the top level or under "pagination".
        meta = body.get("pagination", body) if isinstance(body, dict) else {}
        return Page[model](
            items=items,
            total=meta.get("total", len(items)),
            limit=meta.get("limit", limit),
            offset=meta.get("offset", offset),
            hasMore=meta.get("hasMore", False),
        )

    def _iterate(self, path: str, model: Type[M], page_size: int, **params) -> Iterator[M]:
        offset = 0
        while True:
            page = self._list(path, model, page_size, offset, **params)
            yield from page.items
            if not page.has_more or not page.items:
                return
            offset = page.offset + len(page.items)

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def list_domains(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> Page[Domain]:
        return self._list("/domains", Domain, limit, offset)

    # ------------------------------------------------------------------
    # Email addresses
    # ------------------------------------------------------------------

    def list_email_addresses(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        domain_id: Optional[str] = None,
    ) -> Page[EmailAddress]:
        return self._list("/email-addresses", EmailAddress, limit, offset, domain_id=domain_id)

    def create_email_address(self, address: str, domain_id: Optional[str] = None) -> EmailAddress:
        request = CreateEmailAddressRequest(address=address, domain_id=domain_id)
        body = self._request("POST", "/email-addresses", json=request.model_dump(exclude_none=True))
        return EmailAddress.model_validate(self._data(body))

    def delete_email_address(self, email_address_id: str) -> None:
        self._request("DELETE", f"/email-addresses/{email_address_id}")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def list_webhooks(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> Page[WebhookRegistration]:
        return self._list("/webhooks", WebhookRegistration, limit, offset)

    def iter_webhooks(self, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[WebhookRegistration]:
        return self._iterate("/webhooks", WebhookRegistration, page_size)

    def create_webhook(self, url: str, events: Optional[list[str]] = None) -> WebhookRegistration:
        request = CreateWebhookRequest(url=url) if events is None else CreateWebhookRequest(url=url, events=events)
        body = self._request("POST", "/webhooks", json=request.model_dump())
        return WebhookRegistration.model_validate(self._data(body))

    def delete_webhook(self, webhook_id: str) -> None:
        self._request("DELETE", f"/webhooks/{webhook_id}")


def ensure_webhook_registered(
    api: MailApiClient,
    url: str,
    events: Optional[list[str]] = None,
) -> tuple[WebhookRegistration, bool]:
    """
    Make sure the remote API delivers to `url`.

    Returns (registration, created). An existing registration with the same
    URL is reused as-is.
    """
    for hook in api.iter_webhooks():
        if hook.url.rstrip("/") == url.rstrip("/"):
            logger.info(f"Webhook already registered for {url} ({hook.id})")
            return hook, False

    hook = api.create_webhook(url, events)
    logger.info(f"Registered webhook {hook.id} for {url}")
    return hook, True

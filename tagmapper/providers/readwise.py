"""Readwise Reader API client."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from tagmapper.core.categories import parse_category, parse_location
from tagmapper.core.settings import Settings
from tagmapper.providers.content_types import (
    Document,
    ListOptions,
    ListResponse,
    UpdatePayload,
    UpdateResponse,
)

logger = logging.getLogger(__name__)

READWISE_BASE_URL = "https://readwise.io/api"

MAX_RATE_LIMIT_RETRIES = 5
DEFAULT_RETRY_DELAY = 1.5  # seconds, used when Retry-After is missing or unusable

ModelT = TypeVar("ModelT", bound=BaseModel)


class ReadwiseError(Exception):
    """Base exception for Readwise API errors."""


class ReadwiseMissingTokenError(ReadwiseError):
    """No access token was supplied."""


class ReadwiseAuthError(ReadwiseError):
    """Authentication failed."""


class ReadwiseRateLimitError(ReadwiseError):
    """Rate limit exceeded after all retries."""


class ReadwiseNetworkError(ReadwiseError):
    """Request failed with a non-2xx status or never got a response."""

    def __init__(self, message: str, *, status_code: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class ReadwiseContentTypeError(ReadwiseError):
    """Response body is not JSON."""


class ReadwiseValidationError(ReadwiseError):
    """Response JSON does not have the expected shape."""


class ReadwiseUnexpectedResponseError(ReadwiseError):
    """Auth probe answered with something other than 204 or 401."""


class ReadwiseMissingFieldError(ReadwiseError, ValueError):
    """A required argument (such as a document id) is empty."""


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Convert a Retry-After header to seconds.

    Accepts delta-seconds ("2", "1.5") or an HTTP-date. Returns None when the
    header is missing, negative, unparseable or names a moment in the past.
    """
    if not value:
        return None
    value = value.strip()

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 and seconds != float("inf") else None

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    diff = (retry_at - now).total_seconds()
    return diff if diff > 0 else None


def _validate(model: type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ReadwiseValidationError(
            f"Unexpected {model.__name__} shape from Readwise API: {e}"
        ) from e


class ReadwiseClient:
    """Client for Readwise Reader API (v3).

    Every request carries `Authorization: Token <token>`. Rate limiting (429)
    is retried here and nowhere else; callers never retry.
    """

    def __init__(
        self,
        token: str | None,
        *,
        base_url: str = READWISE_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = MAX_RATE_LIMIT_RETRIES,
        default_retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not token or not token.strip():
            raise ReadwiseMissingTokenError("Readwise API token is required")
        self._token = token
        self._max_retries = max_retries
        self._default_retry_delay = default_retry_delay
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Token {token}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, token: str | None, settings: Settings, **kwargs: Any) -> "ReadwiseClient":
        return cls(
            token,
            base_url=settings.readwise_base_url,
            timeout=settings.readwise_timeout,
            max_retries=settings.rate_limit_max_retries,
            default_retry_delay=settings.rate_limit_default_delay,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ReadwiseClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise ReadwiseNetworkError(f"Network error: {e}", reason=str(e)) from e

    def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        params: list[tuple[str, str]] | dict[str, str] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Make HTTP request, waiting out 429 responses.

        The wait is taken from Retry-After, else the default delay. After
        `max_retries` retries another 429 raises.

        Raises:
            ReadwiseRateLimitError: If rate limited after all retries
            ReadwiseNetworkError: On any other non-2xx status
        """
        retries = 0

        while True:
            resp = self._send(method, url, params=params, json=json_body)

            if resp.status_code == 429:
                if retries >= self._max_retries:
                    raise ReadwiseRateLimitError(
                        f"Rate limit exceeded: received too many 429 responses "
                        f"from Readwise API ({retries} retries)"
                    )

                wait_time = parse_retry_after(resp.headers.get("Retry-After"))
                if wait_time is None:
                    wait_time = self._default_retry_delay
                retries += 1
                logger.warning(
                    f"Rate limited (429). Waiting {wait_time:.1f}s "
                    f"(attempt {retries}/{self._max_retries})"
                )
                self._sleep(wait_time)
                continue

            if not resp.is_success:
                raise ReadwiseNetworkError(
                    f"Network error: {resp.status_code} {resp.reason_phrase}",
                    status_code=resp.status_code,
                    reason=resp.reason_phrase,
                )
            return resp

    @staticmethod
    def _parse_body(resp: httpx.Response) -> Any:
        """Decode a successful response. Empty bodies give None."""
        if resp.status_code in (204, 205) or not resp.text.strip():
            return None

        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip().lower()
        declared_json = content_type == "application/json" or content_type.endswith("+json")

        # No declared type (or plain text): accept the body if it parses as JSON
        if declared_json or content_type in ("", "text/plain"):
            try:
                return json.loads(resp.text)
            except ValueError as e:
                raise ReadwiseContentTypeError(
                    f"Expected a JSON response but the body could not be parsed "
                    f"(Content-Type: {content_type or 'none'})"
                ) from e

        raise ReadwiseContentTypeError(
            f"Expected a JSON response but received Content-Type: {content_type}"
        )

    def request(
        self,
        method: str,
        url: str,
        *,
        params: list[tuple[str, str]] | dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Perform an authenticated call and return the decoded JSON body."""
        resp = self._request_with_retry(method, url, params=params, json_body=json_body)
        return self._parse_body(resp)

    def validate_token(self) -> bool:
        """Check if the token is valid. Returns True if valid, raises otherwise."""
        resp = self._send("GET", "/v2/auth/")
        if resp.status_code == 204:
            return True
        if resp.status_code == 401:
            raise ReadwiseAuthError("Invalid Readwise access token")
        raise ReadwiseUnexpectedResponseError(
            f"Unexpected response from Readwise auth endpoint: {resp.status_code}"
        )

    # --- Document fetching ---

    def list_page(self, options: ListOptions) -> ListResponse:
        """Fetch and validate a single page of the list endpoint."""
        data = self.request("GET", "/v3/list/", params=options.to_params())
        page = _validate(ListResponse, data)
        logger.debug(
            f"Listed {len(page.results)} of {page.count} documents "
            f"(location={options.location}, category={options.category})"
        )
        return page

    def fetch_documents(self, options: ListOptions | None = None) -> list[Document]:
        """Fetch every page for `options`, following nextPageCursor.

        Id lookups stop after the first page. Any invalid page fails the
        whole call; nothing fetched so far is returned.
        """
        options = options or ListOptions()
        documents: list[Document] = []
        next_cursor = options.page_cursor

        while True:
            page = self.list_page(replace(options, page_cursor=next_cursor))
            documents.extend(page.results)

            if options.id:
                break
            next_cursor = page.nextPageCursor
            if not next_cursor:
                break

        return documents

    def get_document(self, doc_id: str, **options: Any) -> Document | None:
        """Fetch one document by id, or None if Reader has no such document.

        Extra keyword arguments are passed to ListOptions (e.g.
        with_html_content=True).
        """
        if not doc_id or not doc_id.strip():
            raise ReadwiseMissingFieldError("Document id is required to fetch a document")
        options.pop("page_cursor", None)
        results = self.fetch_documents(ListOptions(id=doc_id, **options))
        return results[0] if results else None

    def get_documents(
        self,
        locations: Iterable[str],
        categories: Iterable[str],
        page_cursor: str | None = None,
    ) -> list[Document]:
        """Fetch all documents for every (location, category) pair.

        Pairs are walked in input order, location-major, and duplicates are
        fetched again. `page_cursor` is the starting cursor of every pair,
        not just the first one, so only pass one when a single pair is
        requested.

        Raises:
            ValueError: If a location or category is unknown (before any request)
        """
        locs = [parse_location(loc) for loc in locations]
        cats = [parse_category(cat) for cat in categories]

        documents: list[Document] = []
        for location in locs:
            for category in cats:
                documents.extend(
                    self.fetch_documents(
                        ListOptions(location=location, category=category, page_cursor=page_cursor)
                    )
                )
        return documents

    # --- Document updates ---

    def update_document(self, doc_id: str, payload: UpdatePayload) -> UpdateResponse:
        """PATCH a document. Reader echoes back its id and url."""
        if not doc_id or not doc_id.strip():
            raise ReadwiseMissingFieldError("Document id is required to perform an update")
        data = self.request("PATCH", f"/v3/update/{doc_id}/", json_body=payload.to_body())
        return _validate(UpdateResponse, data)

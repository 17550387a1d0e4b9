"""Wire types for the Readwise Reader API (v3)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, get_args
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, Field, field_validator

Category = Literal[
    "article",
    "email",
    "rss",
    "highlight",
    "note",
    "pdf",
    "epub",
    "tweet",
    "video",
]
Location = Literal["new", "later", "shortlist", "archive", "feed"]
TagType = Literal["manual", "generated", "public_api"]

CATEGORIES: tuple[str, ...] = get_args(Category)
LOCATIONS: tuple[str, ...] = get_args(Location)


def _check_url(value: str) -> str:
    # Any scheme: forwarded emails carry mailto: URLs.
    parts = urlsplit(value)
    if not parts.scheme or not (parts.netloc or parts.path):
        raise ValueError(f"not an absolute URL: {value!r}")
    return value


AbsoluteUrl = Annotated[str, AfterValidator(_check_url)]


class TagEntry(BaseModel):
    """One entry of a document's tag map."""

    name: str
    type: TagType
    created: float  # unix timestamp in ms


class Document(BaseModel):
    """A document stored in Reader.

    Metadata fields are nullable; `tags` maps tag name to its entry.
    """

    id: str
    url: AbsoluteUrl
    title: Optional[str] = None
    author: Optional[str] = None
    source: Optional[str] = None
    category: Category
    location: Location
    tags: dict[str, TagEntry] = Field(default_factory=dict)
    site_name: Optional[str] = None
    word_count: Optional[int] = None
    reading_time: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    published_date: Any = None
    summary: Optional[str] = None
    image_url: Optional[str] = None
    parent_id: Optional[str] = None
    reading_progress: Optional[float] = None
    first_opened_at: Optional[str] = None
    last_opened_at: Optional[str] = None
    saved_at: Optional[str] = None
    last_moved_at: Optional[str] = None
    content: Optional[str] = None
    source_url: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _null_tags(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def tag_names(self) -> list[str]:
        """Stored tag names in lexicographic order."""
        return sorted(self.tags)


class ListResponse(BaseModel):
    """One page of the list endpoint."""

    count: int
    nextPageCursor: Optional[str]
    results: list[Document]


class UpdateResponse(BaseModel):
    """Body echoed by the update endpoint."""

    id: str
    url: AbsoluteUrl


class UpdatePayload(BaseModel):
    """Partial document update. Only `tags` is supported for now."""

    tags: Optional[list[str]] = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class ListOptions:
    """Filters for the list endpoint."""

    id: str | None = None
    updated_after: datetime | str | None = None
    location: str | None = None
    category: str | None = None
    tags: list[str | None] | None = None
    page_cursor: str | None = None
    with_html_content: bool | None = None
    with_raw_source_url: bool | None = None

    def to_params(self) -> list[tuple[str, str]]:
        """Build query parameters. `tag` is repeated once per tag."""
        params: list[tuple[str, str]] = []
        if self.page_cursor:
            params.append(("pageCursor", self.page_cursor))
        if self.id:
            params.append(("id", self.id))
        if self.updated_after:
            updated = self.updated_after
            if isinstance(updated, datetime):
                updated = updated.isoformat()
            params.append(("updatedAfter", updated))
        if self.location:
            params.append(("location", self.location))
        if self.category:
            params.append(("category", self.category))
        for tag in self.tags or []:
            if tag is not None:
                params.append(("tag", tag))
        if self.with_html_content is not None:
            params.append(("withHtmlContent", "true" if self.with_html_content else "false"))
        if self.with_raw_source_url is not None:
            params.append(("withRawSourceUrl", "true" if self.with_raw_source_url else "false"))
        return params

"""Review state for reconciling extracted hashtags with stored tags."""

from __future__ import annotations

from dataclasses import dataclass, field

from tagmapper.providers.content_types import Document


@dataclass
class TagReview:
    """Tags of one document under review.

    `selected` is the tag set that will be written back on apply.
    """

    document_id: str
    document_url: str | None = None
    summary: str = ""
    existing_tags: list[str] = field(default_factory=list)
    extracted_tags: list[str] = field(default_factory=list)
    selected: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "document_url": self.document_url,
            "summary": self.summary,
            "existing_tags": self.existing_tags,
            "extracted_tags": self.extracted_tags,
            "selected": selected_tags(self),
            "new_tags": new_tags(self),
            "removed_tags": removed_tags(self),
        }


def review_document(doc: Document, extracted: list[str]) -> TagReview:
    """Start a review: every stored and every extracted tag is selected."""
    existing = doc.tag_names
    return TagReview(
        document_id=doc.id,
        document_url=doc.url,
        summary=doc.summary or "",
        existing_tags=existing,
        extracted_tags=sorted(extracted),
        selected=set(existing) | set(extracted),
    )


def select_only(review: TagReview, tags: list[str]) -> TagReview:
    """Replace the selection, e.g. with the boxes checked in a form."""
    review.selected = {t.strip() for t in tags if t and t.strip()}
    return review


def selected_tags(review: TagReview) -> list[str]:
    return sorted(review.selected)


def new_tags(review: TagReview) -> list[str]:
    """Selected tags the document does not carry yet."""
    return sorted(review.selected - set(review.existing_tags))


def removed_tags(review: TagReview) -> list[str]:
    """Stored tags that were deselected and will be dropped."""
    return sorted(set(review.existing_tags) - review.selected)

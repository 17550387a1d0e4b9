"""Location and category parsing for list filters."""

from tagmapper.providers.content_types import CATEGORIES, LOCATIONS


def _parse(value: str | None, allowed: tuple[str, ...], kind: str) -> str:
    cleaned = (value or "").strip().lower()
    if cleaned not in allowed:
        raise ValueError(
            f"Invalid {kind} {value!r}; expected one of: {', '.join(allowed)}"
        )
    return cleaned


def parse_location(location: str | None) -> str:
    """Normalize a location filter (new, later, shortlist, archive, feed).

    Raises:
        ValueError: If the value is not a known Reader location
    """
    return _parse(location, LOCATIONS, "location")


def parse_category(category: str | None) -> str:
    """Normalize a category filter.

    Lowercases and strips whitespace, so " PDF " becomes "pdf".

    Raises:
        ValueError: If the value is not a known Reader category
    """
    return _parse(category, CATEGORIES, "category")

"""Hashtag extraction from document summaries."""

from __future__ import annotations

import re

# "#" followed by word-character runs, optionally joined by single hyphens.
# \w on str patterns covers Unicode letters and digits plus underscore.
HASHTAG_RE = re.compile(r"#(\w+(?:-\w+)*)")


def extract_hashtags(summary: str | None) -> list[str]:
    """Return hashtag names found in `summary`, without the leading '#'.

    Duplicates are dropped, keeping the order of first appearance. Case is
    preserved, so "#AI" and "#ai" are distinct tags.

    Examples:
        >>> extract_hashtags("Notes on #a, #b-c and #a again")
        ['a', 'b-c']
        >>> extract_hashtags("   ")
        []
    """
    if not isinstance(summary, str) or not summary.strip():
        return []

    # dict keeps insertion order
    seen: dict[str, None] = {}
    for match in HASHTAG_RE.finditer(summary):
        tag = match.group(1).strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)

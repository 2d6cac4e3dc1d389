#!/usr/bin/env python3
"""
Imgur identifier extraction.

Accepts bare IDs ("EAU0pfU"), "ID.ext" shorthand ("EAU0pfU.jpg") and the
usual Imgur URL forms (direct, album, gallery, tag pages).
"""

import re
from typing import Optional

ID_PATTERN = re.compile(r"^[A-Za-z0-9]{5,7}$")

_LEADING_ID = re.compile(r"^([A-Za-z0-9]{5,7})")
_IMGUR_URL = re.compile(
    r"(?:i\.)?imgur\.(?:com|io)/(?:a/|gallery/|t/[^/]+/)?([A-Za-z0-9]{5,7})"
)
_DOMAIN_MARKERS = ("imgur.com", "imgur.io")


def is_valid_id(value) -> bool:
    return isinstance(value, str) and ID_PATTERN.match(value) is not None


def extract_imgur_id(text) -> Optional[str]:
    """
    Extract an Imgur ID from free-form input.

    A leading ID-shaped run is only trusted when the text carries no Imgur
    domain, so "imgur.com/..." is never mistaken for a bare ID.

    Args:
        text: Raw user input (ID, ID.ext or URL)

    Returns:
        The 5-7 character ID, or None if nothing matches
    """
    if not isinstance(text, str):
        return None
    trimmed = text.strip()

    direct = _LEADING_ID.match(trimmed)
    if direct and not any(marker in trimmed for marker in _DOMAIN_MARKERS):
        return direct.group(1)

    url_match = _IMGUR_URL.search(trimmed)
    return url_match.group(1) if url_match else None

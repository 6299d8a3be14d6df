"""
HTML sanitizer applied to every title and body before storage.
"""

from __future__ import annotations

import bleach
from bleach.css_sanitizer import CSSSanitizer

ALLOWED_TAGS = frozenset(bleach.sanitizer.ALLOWED_TAGS) | {
    "br",
    "del",
    "div",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "hr",
    "img",
    "p",
    "pre",
    "s",
    "span",
    "sub",
    "sup",
    "u",
}

ALLOWED_ATTRIBUTES = {
    **bleach.sanitizer.ALLOWED_ATTRIBUTES,
    "img": ["src", "alt", "title", "width", "height"],
    "*": ["style"],
}

ALLOWED_PROTOCOLS = frozenset(bleach.sanitizer.ALLOWED_PROTOCOLS)


class Sanitizer:
    """bleach-backed cleaner permitting the `style` attribute.

    clean() is idempotent: cleaning already-clean HTML returns it unchanged.
    """

    def __init__(self) -> None:
        self._cleaner = bleach.Cleaner(
            tags=ALLOWED_TAGS,
            attributes=ALLOWED_ATTRIBUTES,
            protocols=ALLOWED_PROTOCOLS,
            strip=True,
            css_sanitizer=CSSSanitizer(),
        )

    def clean(self, html: str) -> str:
        return self._cleaner.clean(html)

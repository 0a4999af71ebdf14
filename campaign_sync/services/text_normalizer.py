"""Canonical text form used for every trigger, handle and title comparison."""

import re
import unicodedata
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: Any, *, casefold: bool = True) -> str:
    """Trim, NFKC-compose, collapse whitespace and (by default) casefold.

    Composed and decomposed accents, full-width and half-width forms, and runs
    of any Unicode whitespace all collapse to the same string. The function is
    idempotent.
    """
    if value is None:
        return ""

    text = unicodedata.normalize("NFKC", str(value))
    if casefold:
        # casefold may emit decomposed sequences, so compose again
        text = unicodedata.normalize("NFKC", text.casefold())
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_handle(value: Any) -> str:
    """Normalize a social handle: canonical text without leading '@'."""
    return normalize_text(value).lstrip("@").strip()

"""Content fingerprints for ingested items."""

from __future__ import annotations

import hashlib
import re
import unicodedata


def _normalize_text(text: str) -> str:
    """Normalize text for stable hashing.

    - Unicode NFC normalization
    - Lowercase
    - Collapse all whitespace (spaces, tabs, newlines) to single spaces
    - Strip leading/trailing whitespace
    """
    text = unicodedata.normalize("NFC", text)
    text = text.lower()
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def compute_fingerprint(
    source: str,
    text: str,
    author: str | None = None,
    timestamp: str | None = None,
) -> str:
    """Compute a SHA-256 fingerprint from source, text, author and timestamp.

    Text fields are normalized so that whitespace, case and unicode
    representation differences do not produce distinct fingerprints. The
    timestamp is hashed verbatim. Fields are joined with a null byte to avoid
    ambiguous concatenations.
    """
    parts = [
        _normalize_text(source),
        _normalize_text(text),
        _normalize_text(author or ""),
        (timestamp or "").strip(),
    ]
    combined = "\0".join(parts)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()

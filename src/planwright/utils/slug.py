"""Filesystem-safe, length-bounded names for run logs."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

__all__ = ["slugify"]

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHENS: Pattern[str] = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "run", max_length: int = 60) -> str:
    """Lowercase ``value`` into a slug, hashing the tail when it is too long."""
    slug = _clean(value or "") or _clean(fallback) or "run"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def _clean(value: str) -> str:
    slug = _UNSAFE.sub("-", value.strip().lower())
    return _HYPHENS.sub("-", slug).strip("-")

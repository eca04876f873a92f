"""
Error code system.

FutureSelfError is the base exception for all structured errors.
Raise it with an error code from the registry, and the error middleware
will produce a structured JSON response.

Usage:
    from futureself.core.errors import FutureSelfError
    raise FutureSelfError("FS-PRC-002", detail="expected recurring, got one_time")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^FS-[A-Z]{2,6}-\d{3}$")


class FutureSelfError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "FS-PRC-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
        headers: Extra response headers (e.g. ``Retry-After`` on 429).
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
        headers: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        self.headers = headers or {}
        super().__init__(f"{code}: {detail}" if detail else code)

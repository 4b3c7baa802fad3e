from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint (email, provider link) is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CapabilityMissing(Exception):
    """Raised when an optional table or column is absent from the schema."""

    def __init__(self, capability: str):
        super().__init__(f"capability {capability} not available")
        self.capability = capability


__all__ = ["ConstraintViolation", "CapabilityMissing"]

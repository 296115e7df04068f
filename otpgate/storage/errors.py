from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation.

    Never interpreted as "not found" by callers.
    """

    error_code = "store_unavailable"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreUnavailable"]

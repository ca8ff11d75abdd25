from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


# Failure reasons the API layer maps onto HTTP status codes
PRECONDITION = "precondition"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
ERROR = "error"


@dataclass
class OperationResult:
    """Uniform outcome of every core operation."""

    success: bool
    message: Optional[str] = None
    data: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str | None = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, *, reason: str = ERROR, data: Any = None) -> "OperationResult":
        return cls(success=False, message=message, data=data, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, PrivateAttr


class OperationResult(BaseModel):
    """Uniform ``{success, ...|error}`` outcome of every service call.

    Expected failures travel as values; ``status_code`` is only used by the
    HTTP layer and never serialised.
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    error: Optional[str] = None

    _status_code: int = PrivateAttr(default=200)

    @classmethod
    def ok(cls, **fields: Any) -> "OperationResult":
        return cls(success=True, **fields)

    @classmethod
    def fail(cls, error: str, status_code: int = 400, **fields: Any) -> "OperationResult":
        result = cls(success=False, error=error, **fields)
        result._status_code = status_code
        return result

    @property
    def status_code(self) -> int:
        return self._status_code

    def get(self, key: str, default: Any = None) -> Any:
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key, default)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def infrastructure_failure(
    logger: logging.Logger,
    event: str,
    fallback: str,
    **context: Any,
) -> OperationResult:
    logger.exception(fallback, extra={"event": event, **context})
    return OperationResult.fail(fallback, status_code=500)

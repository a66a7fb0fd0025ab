"""Tagged per-item results for batch operations.

Batches never abort on the first failure. Each item reports either
``ok=True`` with a value or ``ok=False`` with an error message, and callers
summarise the list instead of receiving a single boolean.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class ItemResult(Generic[T]):
    id: str
    ok: bool
    value: T | None = None
    error: str | None = None

    @classmethod
    def success(cls, item_id: Any, value: T | None = None) -> ItemResult[T]:
        return cls(id=str(item_id), ok=True, value=value)

    @classmethod
    def failure(cls, item_id: Any, error: str) -> ItemResult[T]:
        return cls(id=str(item_id), ok=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.ok:
            data["value"] = self.value
        else:
            data["error"] = self.error
        return data


def summarize(results: list[ItemResult]) -> dict[str, int]:
    succeeded = sum(1 for r in results if r.ok)
    return {"total": len(results), "successful": succeeded, "failed": len(results) - succeeded}

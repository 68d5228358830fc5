"""
Operation result wrapper returned by the payment facade.

Internal layers raise ``BusinessException`` subclasses; the facade catches
them at the operation boundary and returns an ``OperationResult`` so callers
can branch on ``success`` without try/except. ``unwrap()`` goes the other way
for the HTTP layer, which reuses the global exception handlers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from domain.common.exceptions import BusinessException


T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[BusinessException] = None

    @classmethod
    def ok(cls, data: T) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: BusinessException) -> "OperationResult[T]":
        return cls(success=False, error=error)

    @property
    def error_code(self) -> Optional[int]:
        return int(self.error.code) if self.error is not None else None

    @property
    def error_type(self) -> Optional[str]:
        return self.error.error_type if self.error is not None else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None

    def unwrap(self) -> T:
        """Return data or re-raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.data  # type: ignore[return-value]

"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with logging and transaction helpers

Pattern Comparison:
    - ServiceResult: Use for expected failures (validation, missing records,
      disk errors) so batch callers can continue after one item fails
    - Exceptions: Use for unexpected failures (bugs, broken invariants)

Usage:
    from core.services import BaseService, ServiceResult

    class IngestService(BaseService):
        def release(self, file_hash: str) -> ServiceResult[int]:
            record = FileHash.objects.filter(hash=file_hash).first()
            if record is None:
                return ServiceResult.failure("Unknown hash", "NOT_FOUND")
            ...
            return ServiceResult.success(remaining)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

    from core.exceptions import BaseApplicationError

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for caller handling
        errors: Field-level errors for validation failures

    Usage:
        result = service.ingest(data, filename="cat.jpg")
        if result.success:
            print(result.data.path)
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code
            errors: Field-level errors (for validation failures)

        Returns:
            ServiceResult with success=False and error details
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(cls, exc: BaseApplicationError) -> ServiceResult[T]:
        """
        Create a failed result from an application exception.

        Args:
            exc: The caught exception

        Returns:
            ServiceResult carrying the exception's message and error code
        """
        return cls.failure(exc.message, exc.error_code)

    def to_response(self) -> dict[str, Any]:
        """
        Convert to a plain dict (for task results and progress payloads).

        Returns:
            Dict with success status and data or error details
        """
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides:
    - A logger named after the concrete service class
    - An explicit transaction boundary helper
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns:
            Logger named "<module>.<ClassName>" for easy filtering
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around Django's transaction.atomic() that makes
        transaction boundaries explicit in service code. Nested use creates
        a savepoint.
        """
        with transaction.atomic():
            yield

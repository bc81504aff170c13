from __future__ import annotations


class BudgetError(Exception):
    """Base class for budget guard failures.

    Every budget error is recoverable by the hosting application; none of them
    should take the process down.
    """

    status_code: int = 500

    def __init__(self, message: str, *, project_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.project_id = project_id


class NotFoundError(BudgetError):
    """Project (or its budget settings) does not exist."""

    status_code = 404


class TransientError(BudgetError):
    """Network or backend failure while reading or writing budget data.

    Callers may retry; the guard applies its failure policy meanwhile.
    """

    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message, project_id=project_id)
        self.upstream_status = upstream_status


class ValidationError(BudgetError):
    """Rejected settings payload, raised at the write boundary before persistence."""

    status_code = 422

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message, project_id=project_id)
        self.field = field

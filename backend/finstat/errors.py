from typing import Any


class FinanceError(Exception):
    """Base for every failure the API reports to a client."""

    status_code = 500

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(FinanceError):
    status_code = 400


class ConflictError(FinanceError):
    status_code = 400


class AuthError(FinanceError):
    status_code = 401


class NotFoundError(FinanceError):
    status_code = 404


class InternalError(FinanceError):
    status_code = 500

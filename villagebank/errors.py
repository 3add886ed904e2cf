from __future__ import annotations

from fastapi import HTTPException, status


class LedgerError(HTTPException):
    """Base class for failures raised by the ledger facade.

    Each subclass fixes the HTTP status it maps to, so facade functions can be
    called in-process or behind the API without translation.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    kind = "ledger_error"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return str(self.detail)


class ValidationError(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "validation_error"


class IneligibilityError(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    kind = "ineligible"


class ConsistencyError(LedgerError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind = "consistency_error"


class NotFoundError(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"

"""Business error taxonomy.

Every error is an ``HTTPException`` so the API layer turns it into a 4xx
response as-is. None of these are transient: callers must not retry them.
"""

from fastapi import HTTPException


class MarketplaceError(HTTPException):
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)


class NotFoundError(MarketplaceError):
    status_code = 404


class ForbiddenError(MarketplaceError):
    status_code = 403


class NotPartyError(ForbiddenError):
    """Actor is neither payer nor recipient (or not a party to the contract)."""


class InvalidStateError(MarketplaceError):
    status_code = 409


class AlreadyResolvedError(InvalidStateError):
    pass


class DuplicateDisputeError(MarketplaceError):
    status_code = 409


class InvalidAmountError(MarketplaceError):
    status_code = 422


class InsufficientBalanceError(MarketplaceError):
    status_code = 422


class ValidationError(MarketplaceError):
    status_code = 422

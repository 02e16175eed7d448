"""HTTP-level error types shared by services and routers."""

from __future__ import annotations

from fastapi import HTTPException, status


class ValidationFailedError(HTTPException):
    """Malformed input. Raised before any side effect."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InsufficientCreditsError(HTTPException):
    def __init__(self, detail: str = "Insufficient credits") -> None:
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


class UserNotFoundError(HTTPException):
    def __init__(self, detail: str = "User not found") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class InvalidSignatureError(HTTPException):
    """A Stripe webhook signature or a wallet signature did not verify.

    Webhooks answer 400 so Stripe redelivers; wallet logins answer 401.
    """

    def __init__(
        self,
        detail: str = "Invalid signature",
        status_code: int = status.HTTP_400_BAD_REQUEST,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail)


class InvalidTokenTypeError(HTTPException):
    def __init__(self, expected: str) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token type: expected {expected} token",
        )

from __future__ import annotations


class CoaAppError(RuntimeError):
    """Base error whose message is safe to return in a response body."""

    status_code = 500

    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class OAuthError(CoaAppError):
    pass


class StoreUnavailableError(CoaAppError):
    status_code = 503


class CredentialNotFoundError(CoaAppError):
    status_code = 404

    def __init__(self, *, shop_domain: str) -> None:
        super().__init__(message=f"No access credential stored for shop {shop_domain}")
        self.shop_domain = shop_domain


class FetchError(CoaAppError):
    pass


class UnauthenticatedError(FetchError):
    # Surfaces as 500; the store-level CredentialNotFoundError carries 404.
    pass


class RemoteRejectedError(FetchError):
    pass


class RetriesExhaustedError(FetchError):
    def __init__(self, *, message: str, attempts: int) -> None:
        super().__init__(message=message)
        self.attempts = attempts

from fastapi import HTTPException


class DomainError(Exception):
    status_code = 400
    detail = "bad_request"

    def __init__(self, detail: str = "", **info):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        self.info = info

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class InsufficientPoints(DomainError):
    status_code = 402
    detail = "insufficient_points"

    def __init__(self, required: int = 0, balance: int = 0):
        super().__init__("insufficient_points", required=required, balance=balance)
        self.required = required
        self.balance = balance


class NotFound(DomainError):
    status_code = 404
    detail = "not_found"


class ProviderError(DomainError):
    status_code = 502
    detail = "provider_error"


class Blocked(DomainError):
    """Sending refused: DNC, opt-out, spam block."""

    status_code = 403
    detail = "blocked"


class Conflict(DomainError):
    status_code = 409
    detail = "conflict"

"""Error taxonomy shared by the services and the HTTP layer.

Services raise these the same way they would raise a plain HTTPException; the
extra ``code`` gives callers a stable machine-readable kind while ``detail``
stays a plain-language sentence that only echoes identifiers the caller sent.
"""

from fastapi import HTTPException


class ServiceError(HTTPException):
    status_code: int = 400
    code: str = "error"
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None) -> None:
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers,
        )


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"
    default_detail = "Not found"


class MissingIdentifier(ServiceError):
    status_code = 400
    code = "missing_identifier"
    default_detail = "An agent id is required"


class MalformedIdentifier(ServiceError):
    status_code = 422
    code = "malformed_identifier"
    default_detail = "Agent id must be 1-64 letters, digits, hyphens or underscores"


class Inactive(ServiceError):
    status_code = 403
    code = "inactive"
    default_detail = "Agent is currently inactive"


class Unconfigured(ServiceError):
    status_code = 409
    code = "unconfigured"
    default_detail = "Agent has no wallet configured"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"
    default_detail = "Not allowed"


class InvalidState(ServiceError):
    status_code = 409
    code = "invalid_state"
    default_detail = "Operation not allowed in the current state"


class AlreadyResolved(ServiceError):
    status_code = 409
    code = "already_resolved"
    default_detail = "Dispute is already resolved"


class DuplicateVote(ServiceError):
    status_code = 409
    code = "duplicate_vote"
    default_detail = "Validator has already voted on this dispute"


class ValidatorNotRecognized(ServiceError):
    status_code = 403
    code = "validator_not_recognized"
    default_detail = "Address is not a registered dispute validator"


class LedgerUnavailable(ServiceError):
    """RPC error or timeout. The only kind callers should retry with backoff."""

    status_code = 503
    code = "ledger_unavailable"
    default_detail = "Blockchain node is unavailable, try again later"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail, headers={"Retry-After": "5"})


class UndecodableTransfer(ServiceError):
    status_code = 422
    code = "undecodable_transfer"
    default_detail = "Transaction is not a well-formed token transfer"

"""Error taxonomy shared by the ledger, the case manager and the HTTP layer.

Every failure carries a stable machine-readable ``kind`` and a ``retryable``
flag so callers can decide whether to retry without parsing messages.
"""


class EscrowError(Exception):
    kind: str = "unexpected"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class Unauthorized(EscrowError):
    kind = "unauthorized"
    status_code = 401


class NotFound(EscrowError):
    kind = "not_found"
    status_code = 404


class Forbidden(EscrowError):
    kind = "forbidden"
    status_code = 403


class Conflict(EscrowError):
    kind = "conflict"
    status_code = 409


class InvalidStateTransition(EscrowError):
    kind = "invalid_state_transition"
    status_code = 409

    def __init__(
        self,
        current: str,
        action: str,
        actor: str | None = None,
        detail: str | None = None,
    ):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class DisputeBlocksRelease(EscrowError):
    kind = "dispute_blocks_release"
    status_code = 409


class ValidationError(EscrowError):
    kind = "validation_error"
    status_code = 422


class Unexpected(EscrowError):
    kind = "unexpected"
    status_code = 500
    retryable = True

"""Typed failures raised by the ledger and settlement services.

None of these depend on a transport.  ``status_code`` and ``code`` are
only read by the HTTP adapter when it turns an error into a response;
the chat layer or a test harness can catch the classes directly.
"""


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidAmountError(LedgerError):
    code = "invalid_amount"


class InvalidMoveError(LedgerError):
    code = "invalid_move"


class InsufficientFundsError(LedgerError):
    status_code = 402
    code = "insufficient_funds"

    def __init__(self, user_id: str, token_id: int, needed: int, available: int | None = None):
        detail = f"Insufficient balance: user {user_id} needs {needed} atomic units of token {token_id}"
        if available is not None:
            detail += f", has {available}"
        super().__init__(detail)
        self.user_id = user_id
        self.token_id = token_id
        self.needed = needed
        self.available = available


class InvalidStateError(LedgerError):
    status_code = 409
    code = "invalid_state"


class MatchNotAvailableError(InvalidStateError):
    code = "not_available"

    def __init__(self, match_id: int, status: str):
        super().__init__(f"Match {match_id} is not available (status {status})")
        self.match_id = match_id
        self.status = status


class AlreadyClaimedError(InvalidStateError):
    code = "already_claimed"

    def __init__(self, group_tip_id: int, user_id: str):
        super().__init__("You have already claimed this group tip")
        self.group_tip_id = group_tip_id
        self.user_id = user_id


class PolicyViolationError(LedgerError):
    status_code = 422
    code = "policy_violation"


class PostingFailureError(LedgerError):
    """A side effect failed after funds were committed; compensation already ran."""

    status_code = 502
    code = "posting_failure"

    def __init__(self, group_tip_id: int, refund: dict, cause: Exception | None = None):
        super().__init__(
            f"Could not post group tip {group_tip_id}. The balance has been refunded."
        )
        self.group_tip_id = group_tip_id
        self.refund = refund
        self.cause = cause

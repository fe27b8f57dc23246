"""Domain error taxonomy.

Every error raised by the orchestration layer carries a stable ``kind``
string and the HTTP status the API layer maps it to.
"""


class DomainError(Exception):
    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: int | str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(DomainError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str, role: str, reason: str | None = None) -> None:
        message = f"Transition {current} -> {target} not allowed for role '{role}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target
        self.role = role


class InvalidStateError(DomainError):
    kind = "invalid_state"
    status_code = 409


class NotAdminError(InvalidStateError):
    kind = "not_admin"

    def __init__(self, chat_id: int | str) -> None:
        super().__init__(f"Bot is not an administrator of channel {chat_id}")
        self.chat_id = chat_id


class MissingWalletError(DomainError):
    kind = "missing_wallet"
    status_code = 422

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} has no wallet address connected")
        self.user_id = user_id


class UnauthorizedError(DomainError):
    kind = "unauthorized"
    status_code = 403


class LedgerError(DomainError):
    kind = "ledger_failure"
    status_code = 502


class ValidationFailure(DomainError):
    kind = "validation_failure"
    status_code = 422

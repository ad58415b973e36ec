class BotError(Exception):
    """Base bot error."""


class UpstreamError(BotError):
    """Raised when an upstream API is unavailable."""


class ValidationError(BotError):
    """Raised for invalid user input."""

    def __init__(self, field: str, hint: str) -> None:
        super().__init__(f"{field}: {hint}")
        self.field = field
        self.hint = hint


class NotEligibleError(BotError):
    """Raised when a user may not start an operation yet."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class OperationConflictError(BotError):
    """Raised when an operation is started while another one is active."""

    def __init__(self, active_kind: str) -> None:
        super().__init__(f"operation already active: {active_kind}")
        self.active_kind = active_kind


class InvalidTransitionError(BotError):
    """Raised when an event is not legal in the current operation state."""


class WalletExistsError(BotError):
    """Raised when a user who already has a wallet asks for a new one."""


class VaultError(BotError):
    """Base vault error."""


class DerivationError(VaultError):
    """Raised when the key derivation function fails."""


class AuthError(VaultError):
    """Raised when a ciphertext fails authentication."""

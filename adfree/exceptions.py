"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class EntitlementError(Exception):
    """Base exception for all entitlement errors."""

    pass


class StorageError(EntitlementError):
    """Raised when an entitlement store operation cannot complete."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Storage error during {operation}: {message}")


class EnvironmentConflictError(EntitlementError):
    """Raised when a transaction id is already recorded for the other environment."""

    def __init__(self, transaction_id: str, stored: str, incoming: str) -> None:
        self.transaction_id = transaction_id
        self.stored = stored
        self.incoming = incoming
        super().__init__(
            f"Transaction {transaction_id} is recorded for {stored}, refusing {incoming} update"
        )


class SignatureVerificationError(EntitlementError):
    """Raised when a signed payload cannot be authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Signature verification failed: {message}")


class WebhookPayloadError(EntitlementError):
    """Raised when a webhook body is malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Malformed webhook payload: {message}")


class VerificationTransportError(EntitlementError):
    """Raised when the store verification endpoint is unreachable or failing."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Verification transport error: {message}")


class AuthenticationError(EntitlementError):
    """Raised when an access token is present but invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class EntitlementSyncError(EntitlementError):
    """Raised on the client when the entitlement server cannot be reached."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Entitlement sync failed: {message}")

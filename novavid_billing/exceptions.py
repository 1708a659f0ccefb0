"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class InsufficientCreditsError(BillingError):
    """Raised when account has insufficient balance for a reservation."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class AccountNotFoundError(BillingError):
    """Raised when account doesn't exist."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class AccountClosedError(BillingError):
    """Raised when account is closed."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} is closed")


class AccountFrozenError(BillingError):
    """Raised when a frozen account is asked to mutate."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} is frozen pending manual reconciliation")


class ActiveSubscriptionError(BillingError):
    """Raised when closing an account that still has a live subscription."""

    def __init__(self, account_id: str, subscription_status: str) -> None:
        self.account_id = account_id
        self.subscription_status = subscription_status
        super().__init__(
            f"Account {account_id} has a {subscription_status} subscription and cannot be closed"
        )


class IdempotencyConflictError(BillingError):
    """Raised when idempotency key reused with different data."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"Idempotency conflict for {key}: {message}")


class ReservationNotFoundError(BillingError):
    """Raised when a reservation cannot be located for its account."""

    def __init__(self, account_id: str, operation_id: str) -> None:
        self.account_id = account_id
        self.operation_id = operation_id
        super().__init__(f"Reservation {operation_id} not found for account {account_id}")


class ReservationResolvedError(BillingError):
    """Raised when a replayed operation id already settled or released."""

    def __init__(self, operation_id: str, state: str) -> None:
        self.operation_id = operation_id
        self.state = state
        super().__init__(f"Operation {operation_id} already {state}; use a new operation id")


class OperationInProgressError(BillingError):
    """Raised when an operation id is replayed while its reservation is still held."""

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} is still in progress")


class InvariantViolationError(BillingError):
    """Raised when a ledger invariant is observed broken. Fatal for the account."""

    def __init__(self, account_id: str, message: str) -> None:
        self.account_id = account_id
        self.message = message
        super().__init__(f"Invariant violation on account {account_id}: {message}")


class StorageConflictError(BillingError):
    """Raised on transient storage failures; retry with the same idempotency key."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage conflict: {message}")


class WorkFailureError(BillingError):
    """Raised when metered work fails after its reservation was released."""

    def __init__(self, operation_id: str, cause: BaseException) -> None:
        self.operation_id = operation_id
        self.cause = cause
        super().__init__(f"Metered operation {operation_id} failed: {cause!r}")


class MalformedEventError(BillingError):
    """Raised when a provider event cannot be normalized."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"Malformed {provider} event: {message}")


class UnresolvedAccountMappingError(BillingError):
    """Raised when no local account matches a provider customer yet."""

    def __init__(self, provider: str, customer_id: str | None) -> None:
        self.provider = provider
        self.customer_id = customer_id
        super().__init__(f"No account mapped to {provider} customer {customer_id}")


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


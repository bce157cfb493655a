"""Error taxonomy for the relay pipeline."""


class AlertRelayError(Exception):
    """Base class for all pipeline errors."""


class SignalValidationError(AlertRelayError):
    """Inbound signal is malformed or unsigned. Rejected, never retried."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateSignal(AlertRelayError):
    """Signal was already seen inside the dedup window."""

    def __init__(self, idempotency_key: str, original_id: str) -> None:
        super().__init__(f"duplicate signal {idempotency_key[:12]} (original={original_id})")
        self.idempotency_key = idempotency_key
        self.original_id = original_id


class CapacityExceeded(AlertRelayError):
    """Entry signal rejected because the configuration is at capacity."""

    def __init__(self, configuration: str, open_trades: int, capacity: int) -> None:
        super().__init__(
            f"capacity reached for {configuration} ({open_trades}/{capacity} open trades)"
        )
        self.configuration = configuration
        self.open_trades = open_trades
        self.capacity = capacity


class OrphanExit(AlertRelayError):
    """Exit signal with no matching open trade."""

    def __init__(self, configuration: str, direction: str | None) -> None:
        super().__init__(
            f"no open {direction or 'any-direction'} trade to close for {configuration}"
        )
        self.configuration = configuration
        self.direction = direction


class PersistenceError(AlertRelayError):
    """Store operation failed after bounded retries."""


class ConcurrentModification(AlertRelayError):
    """Optimistic version check lost a race; the caller should retry."""


class ExpressionError(AlertRelayError):
    """Custom condition expression is invalid or uses a forbidden construct."""


class ChannelError(AlertRelayError):
    """Base class for notification channel failures."""


class ChannelTransientError(ChannelError):
    """Send failed but may succeed later (timeouts, 5xx, rate limiting)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ChannelPermanentError(ChannelError):
    """Recipient can never be reached on this channel (e.g. bot blocked)."""


class ChannelRejectedError(ChannelError):
    """This message was refused (e.g. malformed markup); the recipient stays reachable."""

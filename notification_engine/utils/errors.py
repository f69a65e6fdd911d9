class DatabaseError(Exception):
    """Custom exception for database-related errors."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class BusinessLogicError(Exception):
    """Custom exception for business logic errors."""

    def __init__(self, message: str, error_code: str = "BLOC_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class NotFoundError(Exception):
    """Custom exception for resource not found errors."""

    def __init__(
        self, message: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ConfigurationError(Exception):
    """Raised when required settings are missing or unusable at startup."""

    def __init__(self, message: str, error_code: str = "CONFIG_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class EntityStoreError(Exception):
    """Raised by entity store implementations when a query or mutation fails."""

    def __init__(self, message: str, error_code: str = "STORE_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class TransportError(Exception):
    """Base class for channel transport failures."""

    permanent = False

    def __init__(self, message: str, error_code: str = "TRANSPORT_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class TransientTransportError(TransportError):
    """Provider outage, timeout or throttling. Worth retrying later."""

    def __init__(self, message: str, error_code: str = "TRANSPORT_TRANSIENT"):
        super().__init__(message, error_code)


class PermanentTransportError(TransportError):
    """Invalid address, unsubscribed recipient and similar. Never retried."""

    permanent = True

    def __init__(self, message: str, error_code: str = "TRANSPORT_PERMANENT"):
        super().__init__(message, error_code)


class InvalidTransitionError(Exception):
    """Raised when a lifecycle transition is requested from a terminal state."""

    def __init__(self, message: str, error_code: str = "INVALID_TRANSITION"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code

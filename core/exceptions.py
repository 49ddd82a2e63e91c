from abc import ABC


class BaseCustomException(Exception, ABC):
    """
    Base class for all custom exceptions.
    """

    def __init__(self, message: str | None = None):
        self.message = message or self.get_default_message()
        super().__init__(self.message)

    def get_default_message(self) -> str:
        """
        Return default error message.

        Returns
        -------
        str
            Default error message
        """
        return "error.unknown"

    def get_status_code(self) -> int:
        """
        Return HTTP status code for exception.

        Returns
        -------
        int
            HTTP status code
        """
        return 500


class ServiceUnavailableException(BaseCustomException):
    """Dependency unavailable exception (503)."""

    def get_status_code(self) -> int:
        return 503


class LedgerConnectionError(ServiceUnavailableException):
    """Ledger node cannot be reached."""

    def get_default_message(self) -> str:
        return "error.ledger.unreachable"


class StoreConnectionError(ServiceUnavailableException):
    """Index store cannot be reached."""

    def get_default_message(self) -> str:
        return "error.store.unreachable"


class EventQueryError(BaseCustomException):
    """Historical log query failed for one event filter."""

    def __init__(self, event_name: str, message: str | None = None):
        self.event_name = event_name
        super().__init__(
            f"Failed to query {event_name} events: {message}" if message else None
        )

    def get_default_message(self) -> str:
        return "error.events.query_failed"


class TransactionFetchError(BaseCustomException):
    """Transaction, receipt or block lookup failed."""

    def get_default_message(self) -> str:
        return "error.transaction.fetch_failed"


class AbiNotFoundError(BaseCustomException):
    """No ABI could be resolved for a contract."""

    def get_default_message(self) -> str:
        return "error.abi.not_found"


class ContractConfigError(BaseCustomException):
    """Contract descriptor file is missing or invalid."""

    def get_default_message(self) -> str:
        return "error.contracts.invalid"


class RetryExhaustedError(BaseCustomException):
    """Retry policy gave up after its maximum number of attempts."""

    def get_default_message(self) -> str:
        return "error.retry.exhausted"

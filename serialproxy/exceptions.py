"""Common serialproxy exceptions."""

from typing import Any


class SerialProxyError(Exception):
    """Base for all serialproxy exceptions."""

    @property
    def cause(self) -> BaseException | None:
        """Cause of the exception.

        This is the same as ``Exception.__cause__``.
        """
        return self.__cause__


class InvalidObjectError(SerialProxyError):
    """Raised when a guarded type is reconstructed without its proxy.

    Attributes:
        type_name: Qualified name of the type the stream tried to rebuild.
    """

    def __init__(self, message: str, *, type_name: str | None = None) -> None:
        """Initialize an invalid object error."""
        super().__init__(message if not type_name else f"{type_name}: {message}")
        self._message = message
        self.type_name = type_name

    @property
    def message(self) -> str:
        """Message."""
        return self._message


class InvariantViolationError(SerialProxyError, ValueError):
    """Raised by a validating constructor when a field value is invalid."""

    def __init__(self, message: str, *, field: str, value: Any) -> None:
        """Initialize an invariant violation error."""
        super().__init__(f"{field}: {message} (got {value!r})")
        self._message = message
        self._field = field
        self._value = value

    @property
    def message(self) -> str:
        """Message."""
        return self._message

    @property
    def field(self) -> str:
        """Name of the field that failed validation."""
        return self._field

    @property
    def value(self) -> Any:
        """Rejected value."""
        return self._value


class ProxyDefinitionError(SerialProxyError, TypeError):
    """Raised when a guarded type or its proxy is declared incorrectly."""

    pass


class CyclicGraphError(SerialProxyError):
    """Raised when an object graph cycles back through a guarded type.

    A proxy copies the complete state of its holder before the holder exists on
    the read side, so a holder cannot be reachable from its own proxy.
    """

    def __init__(self, type_name: str) -> None:
        """Initialize a cyclic graph error."""
        super().__init__(f"Cycle through guarded type {type_name}")
        self.type_name = type_name

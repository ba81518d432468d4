"""Guarded value types.

Each type here validates its state in its constructor and is only ever
serialized through its proxy, so no stream can produce an instance that
breaks its invariant.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from serialproxy.exceptions import InvariantViolationError
from serialproxy.proxy import (
    ProxySerializable,
    SerializationProxy,
    serialization_proxy,
)


@dataclass(frozen=True)
class NonNegativeValueProxy(SerializationProxy):
    """Serialized form of :py:class:`NonNegativeValue`.

    Attributes:
        value: Copy of the holder's value. Not validated here.
    """

    value: int | float

    def read_resolve(self) -> NonNegativeValue:
        """See base class."""
        return NonNegativeValue(self.value)


@serialization_proxy(NonNegativeValueProxy)
class NonNegativeValue(ProxySerializable):
    """Immutable number that is never negative."""

    __slots__ = ("_value",)

    def __init__(self, value: int | float) -> None:
        """Create a non-negative value.

        Raises:
            InvariantViolationError: Value is negative, NaN, or not a number.
        """
        # bool is an int subclass but not a quantity
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvariantViolationError(
                "must be an int or float", field="value", value=value
            )
        if isinstance(value, float) and math.isnan(value):
            raise InvariantViolationError("must be a number", field="value", value=value)
        if value < 0:
            raise InvariantViolationError(
                "must be non-negative", field="value", value=value
            )
        object.__setattr__(self, "_value", value)

    @property
    def value(self) -> int | float:
        """The value."""
        return self._value

    def write_replace(self) -> NonNegativeValueProxy:
        """See base class."""
        return NonNegativeValueProxy(self._value)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NonNegativeValue):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash((NonNegativeValue, self._value))

    def __repr__(self) -> str:
        return f"NonNegativeValue({self._value!r})"


@dataclass(frozen=True)
class PeriodProxy(SerializationProxy):
    """Serialized form of :py:class:`Period`."""

    start: datetime
    end: datetime

    def read_resolve(self) -> Period:
        """See base class."""
        return Period(self.start, self.end)


@serialization_proxy(PeriodProxy)
class Period(ProxySerializable):
    """Immutable span of time whose start is never after its end.

    Both ends must be timezone-aware.
    """

    __slots__ = ("_start", "_end")

    def __init__(self, start: datetime, end: datetime) -> None:
        """Create a period.

        Raises:
            InvariantViolationError: Either end is not an aware datetime, or
                start is after end.
        """
        for field, value in (("start", start), ("end", end)):
            if not isinstance(value, datetime):
                raise InvariantViolationError(
                    "must be a datetime", field=field, value=value
                )
            if value.tzinfo is None or value.utcoffset() is None:
                raise InvariantViolationError(
                    "must be timezone-aware", field=field, value=value
                )
        if start > end:
            raise InvariantViolationError(
                f"must not be after end {end.isoformat()}", field="start", value=start
            )
        object.__setattr__(self, "_start", start)
        object.__setattr__(self, "_end", end)

    @property
    def start(self) -> datetime:
        """Start of the period."""
        return self._start

    @property
    def end(self) -> datetime:
        """End of the period."""
        return self._end

    def write_replace(self) -> PeriodProxy:
        """See base class."""
        return PeriodProxy(self._start, self._end)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Period):
            return NotImplemented
        return (self._start, self._end) == (other._start, other._end)

    def __hash__(self) -> int:
        return hash((Period, self._start, self._end))

    def __repr__(self) -> str:
        return f"Period({self._start.isoformat()}, {self._end.isoformat()})"

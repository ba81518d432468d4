import math
from datetime import datetime, timedelta, timezone

import pytest

from serialproxy.exceptions import InvariantViolationError
from serialproxy.values import (
    NonNegativeValue,
    NonNegativeValueProxy,
    Period,
    PeriodProxy,
)

START = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)


class TestNonNegativeValue:
    @pytest.mark.parametrize("value", [0, 5, 2.5, 10**30, 10**400, math.inf])
    def test_accepts_non_negative(self, value) -> None:
        assert NonNegativeValue(value).value == value

    @pytest.mark.parametrize("value", [-1, -0.5, -(10**30), -math.inf])
    def test_rejects_negative(self, value) -> None:
        with pytest.raises(InvariantViolationError) as err:
            NonNegativeValue(value)
        assert err.value.field == "value"
        assert err.value.value == value
        assert "must be non-negative" in str(err.value)

    @pytest.mark.parametrize("value", ["5", None, True, [1], math.nan])
    def test_rejects_non_numbers(self, value) -> None:
        with pytest.raises(InvariantViolationError):
            NonNegativeValue(value)

    def test_invariant_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            NonNegativeValue(-1)

    def test_immutable(self) -> None:
        value = NonNegativeValue(5)
        with pytest.raises(AttributeError):
            value._value = -1  # type: ignore
        with pytest.raises(AttributeError):
            value.value = -1  # type: ignore
        assert value.value == 5
        assert not hasattr(value, "__dict__")

    def test_equality_and_hash(self) -> None:
        assert NonNegativeValue(5) == NonNegativeValue(5)
        assert NonNegativeValue(5) != NonNegativeValue(6)
        assert NonNegativeValue(5) != 5
        assert len({NonNegativeValue(5), NonNegativeValue(5), NonNegativeValue(1)}) == 2
        assert repr(NonNegativeValue(5)) == "NonNegativeValue(5)"

    def test_write_replace_copies_state(self) -> None:
        proxy = NonNegativeValue(7).write_replace()
        assert proxy == NonNegativeValueProxy(7)

    def test_proxy_does_not_validate(self) -> None:
        # Validation happens only when the proxy is resolved
        proxy = NonNegativeValueProxy(-1)
        assert proxy.value == -1
        with pytest.raises(InvariantViolationError):
            proxy.read_resolve()

    def test_read_resolve_builds_new_holder(self) -> None:
        proxy = NonNegativeValueProxy(3)
        first = proxy.read_resolve()
        second = proxy.read_resolve()
        assert first == second == NonNegativeValue(3)
        assert first is not second


class TestPeriod:
    def test_valid(self) -> None:
        period = Period(START, START + timedelta(hours=1))
        assert period.start == START
        assert period.end == START + timedelta(hours=1)
        assert Period(START, START).start == START

    def test_start_after_end(self) -> None:
        with pytest.raises(InvariantViolationError) as err:
            Period(START + timedelta(seconds=1), START)
        assert err.value.field == "start"

    def test_naive_rejected(self) -> None:
        with pytest.raises(InvariantViolationError) as err:
            Period(START, datetime(2024, 1, 2))
        assert err.value.field == "end"
        assert "timezone-aware" in str(err.value)

    def test_non_datetime_rejected(self) -> None:
        with pytest.raises(InvariantViolationError):
            Period("2024-01-01", START)  # type: ignore

    def test_mixed_offsets_compare_by_instant(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        # 13:00+02:00 is 11:00 UTC, before START
        assert Period(datetime(2024, 1, 1, 13, tzinfo=plus_two), START)
        with pytest.raises(InvariantViolationError):
            Period(START, datetime(2024, 1, 1, 13, tzinfo=plus_two))

    def test_proxy_round_trip(self) -> None:
        period = Period(START, START + timedelta(days=2))
        proxy = period.write_replace()
        assert proxy == PeriodProxy(period.start, period.end)
        assert proxy.read_resolve() == period
        with pytest.raises(InvariantViolationError):
            PeriodProxy(proxy.end, proxy.start).read_resolve()

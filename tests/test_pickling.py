import copyreg
import pickle
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

import serialproxy.pickling
from serialproxy.exceptions import (
    CyclicGraphError,
    InvalidObjectError,
    InvariantViolationError,
)
from serialproxy.proxy import ProxySerializable, SerializationProxy, serialization_proxy
from serialproxy.values import NonNegativeValue, NonNegativeValueProxy, Period


@dataclass(frozen=True)
class BagProxy(SerializationProxy):
    items: list

    def read_resolve(self) -> "Bag":
        return Bag(self.items)


@serialization_proxy(BagProxy)
class Bag(ProxySerializable):
    """Holds its list by reference so tests can build cycles."""

    def __init__(self, items: list) -> None:
        self.items = items

    def write_replace(self) -> BagProxy:
        return BagProxy(self.items)


class Crafted:
    def __init__(self, reduced: tuple) -> None:
        self.reduced = reduced

    def __reduce__(self):
        return self.reduced


@pytest.mark.parametrize("protocol", range(pickle.HIGHEST_PROTOCOL + 1))
def test_round_trip(protocol: int) -> None:
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    value = {
        "count": NonNegativeValue(3),
        "window": Period(start, start + timedelta(hours=2)),
        "plain": [1, "two"],
    }
    data = serialproxy.pickling.dumps(value, protocol)
    assert serialproxy.pickling.loads(data) == value
    # Compatible with the standard unpickler as well
    assert pickle.loads(data) == value


def test_shared_reference_is_not_a_cycle() -> None:
    holder = NonNegativeValue(1)
    bag = Bag([holder, holder])
    restored = serialproxy.pickling.loads(serialproxy.pickling.dumps([bag, bag, holder]))
    assert restored[0] is restored[1]
    assert restored[0].items[0] is restored[0].items[1] is restored[2]


def test_cycle_through_guarded_type() -> None:
    items: list = []
    bag = Bag(items)
    items.append(bag)
    with pytest.raises(CyclicGraphError) as err:
        serialproxy.pickling.dumps(bag)
    assert err.value.type_name.endswith("Bag")


def test_indirect_cycle_through_guarded_type() -> None:
    outer: dict[str, Any] = {}
    bag = Bag([outer])
    outer["bag"] = bag
    with pytest.raises(CyclicGraphError):
        serialproxy.pickling.dumps(outer)


def test_cycle_not_through_guarded_type_is_fine() -> None:
    items: list = []
    items.append(items)
    restored = serialproxy.pickling.loads(
        serialproxy.pickling.dumps(Bag([items]))
    )
    assert restored.items[0][0] is restored.items[0]


@pytest.mark.parametrize(
    "reduced",
    [
        # Reconstructor with state
        (copyreg._reconstructor, (NonNegativeValue, object, None), {"_value": -1}),
        # Allocation only, no state at all
        (copyreg._reconstructor, (NonNegativeValue, object, None)),
        # Calling the class directly
        (NonNegativeValue, (5,)),
    ],
)
def test_direct_reference_rejected_before_allocation(reduced: tuple) -> None:
    data = pickle.dumps(Crafted(reduced))
    with pytest.raises(InvalidObjectError) as err:
        serialproxy.pickling.loads(data)
    assert err.value.type_name == "serialproxy.values.NonNegativeValue"


def test_negative_proxy_rejected() -> None:
    from serialproxy.proxy import resolve_proxy

    data = pickle.dumps(Crafted((resolve_proxy, (NonNegativeValueProxy(-3),))))
    with pytest.raises(InvariantViolationError):
        serialproxy.pickling.loads(data)


@pytest.mark.parametrize("protocol", range(pickle.HIGHEST_PROTOCOL + 1))
def test_allowed_modules_every_protocol(protocol: int) -> None:
    data = serialproxy.pickling.dumps(NonNegativeValue(2), protocol)
    assert serialproxy.pickling.loads(
        data, allowed_modules=["serialproxy"]
    ) == NonNegativeValue(2)


def test_allowed_modules() -> None:
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    period_data = serialproxy.pickling.dumps(Period(start, start))
    with pytest.raises(pickle.UnpicklingError) as err:
        serialproxy.pickling.loads(period_data, allowed_modules=["serialproxy"])
    assert "datetime" in str(err.value)
    assert serialproxy.pickling.loads(
        period_data, allowed_modules=["serialproxy", "datetime"]
    ) == Period(start, start)


def test_allowed_modules_prefix_is_module_boundary() -> None:
    data = pickle.dumps(Crafted((print, ("hi",))))
    with pytest.raises(pickle.UnpicklingError):
        serialproxy.pickling.loads(data, allowed_modules=["built"])


def test_guarded_type_rejected_even_when_allowed() -> None:
    data = pickle.dumps(Crafted((NonNegativeValue, (5,))))
    with pytest.raises(InvalidObjectError):
        serialproxy.pickling.loads(data, allowed_modules=["serialproxy"])


@pytest.mark.parametrize("protocol", range(pickle.HIGHEST_PROTOCOL + 1))
def test_huge_int_round_trip(protocol: int) -> None:
    value = NonNegativeValue(10**400)
    data = serialproxy.pickling.dumps(value, protocol)
    assert serialproxy.pickling.loads(data, allowed_modules=["serialproxy"]) == value


class HolderLookup:
    """Produces the holder class through a registry call instead of a global."""

    def __reduce__(self):
        return (
            serialproxy.proxy.lookup_holder_type,
            ("serialproxy.values.NonNegativeValue",),
        )


def holder_class() -> type:
    return NonNegativeValue


class HolderFromCall:
    def __reduce__(self):
        return (holder_class, ())


@pytest.mark.parametrize("protocol", range(pickle.HIGHEST_PROTOCOL + 1))
def test_registry_lookup_in_stream_forbidden(protocol: int) -> None:
    data = pickle.dumps(
        Crafted((copyreg._reconstructor, (HolderLookup(), object, None))), protocol
    )
    with pytest.raises(pickle.UnpicklingError) as err:
        serialproxy.pickling.loads(data, allowed_modules=["serialproxy"])
    assert "lookup_holder_type" in str(err.value)
    # Forbidden even when every module is allowed
    with pytest.raises(pickle.UnpicklingError):
        serialproxy.pickling.loads(data)


@pytest.mark.parametrize(
    "name",
    ["bound_proxy", "write_proxy", "reject_direct", "lookup_proxy_type"],
)
def test_only_resolver_and_proxies_load_from_serialproxy(name: str) -> None:
    data = pickle.dumps(
        Crafted((getattr(serialproxy.proxy, name), (NonNegativeValueProxy(1),)))
    )
    with pytest.raises(pickle.UnpicklingError):
        serialproxy.pickling.loads(data, allowed_modules=["serialproxy"])


@pytest.mark.parametrize(
    "reduced,protocol",
    [
        ((copyreg._reconstructor, (HolderFromCall(), object, None)), 0),
        ((copyreg._reconstructor, (HolderFromCall(), object, None)), 4),
        # Protocol 2 and up only accept __newobj__ for the object's own class
        ((copyreg.__newobj__, (HolderFromCall(),)), 1),
    ],
)
def test_reconstructor_given_guarded_class_rejected(
    reduced: tuple, protocol: int
) -> None:
    data = pickle.dumps(Crafted(reduced), protocol)
    with pytest.raises(InvalidObjectError) as err:
        serialproxy.pickling.loads(
            data, allowed_modules=["serialproxy", "copyreg", __name__]
        )
    assert err.value.type_name == "serialproxy.values.NonNegativeValue"


def test_plain_pickle_cannot_reject_allocation_only_stream() -> None:
    data = pickle.dumps(
        Crafted((copyreg._reconstructor, (NonNegativeValue, object, None)))
    )
    # Plain pickle never calls the guard when there is no state to set
    empty = pickle.loads(data)
    assert type(empty) is NonNegativeValue
    assert not hasattr(empty, "_value")
    with pytest.raises(InvalidObjectError):
        serialproxy.pickling.loads(data)
    # State is always refused, even by plain pickle
    with_state = pickle.dumps(
        Crafted(
            (copyreg._reconstructor, (NonNegativeValue, object, None), {"_value": 1})
        )
    )
    with pytest.raises(InvalidObjectError):
        pickle.loads(with_state)

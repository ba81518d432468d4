"""Payload conversion for values that may contain guarded types.

A :py:class:`PayloadConverter` turns values into :py:class:`Payload` instances
(metadata naming the encoding, plus bytes) and back. A :py:class:`PayloadCodec`
can then transform the bytes, for instance to compress them, and
:py:class:`DataConverter` chains the two.

Guarded types (see :py:mod:`serialproxy.proxy`) never cross this boundary as
themselves. On the way out they are replaced by their proxy, and on the way in
they are only ever built by resolving a proxy.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import json
import pickle
import sys
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from itertools import zip_longest
from types import UnionType
from typing import Any, ClassVar, Union, get_args, get_origin, get_type_hints, overload

import serialproxy.exceptions
import serialproxy.pickling
import serialproxy.proxy
import serialproxy.types

if sys.version_info < (3, 11):
    # datetime.fromisoformat only reads its own output before 3.11
    from dateutil import parser  # type: ignore


@dataclass(frozen=True)
class Payload:
    """Encoded value.

    Attributes:
        metadata: Encoding details. Converters always set ``encoding``.
        data: Encoded bytes.
    """

    metadata: Mapping[str, bytes] = dataclasses.field(default_factory=dict)
    data: bytes = b""


class PayloadConverter(ABC):
    """Converts values to payloads and back, several at a time."""

    default: ClassVar[PayloadConverter]
    """Default payload converter."""

    @abstractmethod
    def to_payloads(self, values: Sequence[Any]) -> list[Payload]:
        """Encode values into one payload each."""
        raise NotImplementedError

    @abstractmethod
    def from_payloads(
        self,
        payloads: Sequence[Payload],
        type_hints: list[type] | None = None,
    ) -> list[Any]:
        """Decode payloads into one value each.

        Args:
            payloads: Payloads to decode.
            type_hints: Expected types. When given, one per payload.
        """
        raise NotImplementedError

    def to_payload(self, value: Any) -> Payload:
        """Encode a single value."""
        return self.to_payloads([value])[0]

    @overload
    def from_payload(self, payload: Payload) -> Any: ...

    @overload
    def from_payload(
        self,
        payload: Payload,
        type_hint: type[serialproxy.types.AnyType],
    ) -> serialproxy.types.AnyType: ...

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """Decode a single payload."""
        return self.from_payloads([payload], [type_hint] if type_hint else None)[0]


class EncodingPayloadConverter(ABC):
    """Converter for one encoding, used as part of a
    :py:class:`CompositePayloadConverter`.
    """

    @property
    @abstractmethod
    def encoding(self) -> str:
        """Value of the ``encoding`` metadata this converter reads and writes."""
        raise NotImplementedError

    @abstractmethod
    def to_payload(self, value: Any) -> Payload | None:
        """Encode the value, or return None to let the next converter try."""
        raise NotImplementedError

    @abstractmethod
    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """Decode a payload of this converter's encoding.

        Raises:
            RuntimeError: The payload is malformed.
            serialproxy.exceptions.InvalidObjectError: The payload
                reconstructs a guarded type without its proxy.
            serialproxy.exceptions.InvariantViolationError: A proxy holds
                values its holder rejects.
        """
        raise NotImplementedError


class CompositePayloadConverter(PayloadConverter):
    """Payload converter trying a list of encoding converters in order.

    Attributes:
        converters: Encoding converters keyed by encoded encoding name.
    """

    converters: Mapping[bytes, EncodingPayloadConverter]

    def __init__(self, *converters: EncodingPayloadConverter) -> None:
        """Create a composite converter. Earlier converters win on encode."""
        self.converters = {c.encoding.encode(): c for c in converters}

    def to_payloads(self, values: Sequence[Any]) -> list[Payload]:
        """See base class.

        Raises:
            RuntimeError: No converter accepted a value.
        """
        payloads = []
        for index, value in enumerate(values):
            payload = next(
                (
                    p
                    for p in (c.to_payload(value) for c in self.converters.values())
                    if p is not None
                ),
                None,
            )
            if payload is None:
                raise RuntimeError(
                    f"Value at index {index} of type {type(value)} has no known converter"
                )
            payloads.append(payload)
        return payloads

    def from_payloads(
        self,
        payloads: Sequence[Payload],
        type_hints: list[type] | None = None,
    ) -> list[Any]:
        """See base class.

        Raises:
            KeyError: A payload has an encoding no converter handles.
            RuntimeError: A payload is malformed. The converter's error is
                the cause.
        """
        values = []
        for index, (payload, type_hint) in enumerate(
            zip_longest(payloads, type_hints or [])
        ):
            encoding = payload.metadata.get("encoding", b"<unknown>")
            converter = self.converters.get(encoding)
            if converter is None:
                raise KeyError(f"Unknown payload encoding {encoding.decode()}")
            try:
                values.append(converter.from_payload(payload, type_hint))
            except RuntimeError as err:
                raise RuntimeError(
                    f"Payload at index {index} with encoding {encoding.decode()} could not be converted"
                ) from err
        return values


class DefaultPayloadConverter(CompositePayloadConverter):
    """Handles None, bytes, guarded types, and anything :py:class:`ProxyJSONEncoder`
    can write. A shared instance is :py:attr:`PayloadConverter.default`.
    """

    default_encoding_payload_converters: tuple[EncodingPayloadConverter, ...]
    """Encoding converters of every default payload converter, in order."""

    def __init__(self) -> None:
        """Create a default payload converter."""
        super().__init__(*DefaultPayloadConverter.default_encoding_payload_converters)


class BinaryNullPayloadConverter(EncodingPayloadConverter):
    """'binary/null': None, with no data."""

    @property
    def encoding(self) -> str:
        """See base class."""
        return "binary/null"

    def to_payload(self, value: Any) -> Payload | None:
        """See base class."""
        if value is not None:
            return None
        return Payload(metadata={"encoding": self.encoding.encode()})

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """See base class."""
        if payload.data:
            raise RuntimeError("Expected empty data for binary/null")
        return None


class BinaryPlainPayloadConverter(EncodingPayloadConverter):
    """'binary/plain': bytes as they are."""

    @property
    def encoding(self) -> str:
        """See base class."""
        return "binary/plain"

    def to_payload(self, value: Any) -> Payload | None:
        """See base class."""
        if not isinstance(value, bytes):
            return None
        return Payload(metadata={"encoding": self.encoding.encode()}, data=value)

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """See base class."""
        return payload.data


class ProxyJSONEncoder(json.JSONEncoder):
    """JSON encoder writing guarded types as their proxy's fields.

    Also writes datetimes as ISO 8601, dataclasses as objects and sets as
    arrays.
    """

    def default(self, o: Any) -> Any:
        """See :py:meth:`json.JSONEncoder.default`."""
        if isinstance(o, serialproxy.proxy.ProxySerializable):
            return proxy_fields(serialproxy.proxy.write_proxy(o))
        if isinstance(o, datetime):
            return o.isoformat()
        if dataclasses.is_dataclass(o) and not isinstance(o, type):
            return _shallow_fields(o)
        if isinstance(o, (set, frozenset)):
            return list(o)
        return super().default(o)


def _shallow_fields(o: Any) -> dict[str, Any]:
    # Not dataclasses.asdict, which would copy nested holders instead of
    # letting the encoder proxy them
    return {f.name: getattr(o, f.name) for f in dataclasses.fields(o)}


def proxy_fields(proxy: serialproxy.proxy.SerializationProxy) -> dict[str, Any]:
    """Fields of a dataclass proxy, not recursed into.

    Raises:
        TypeError: The proxy is not a dataclass.
    """
    if not dataclasses.is_dataclass(proxy):
        raise TypeError(
            f"Proxy {serialproxy.proxy.type_name(type(proxy))} must be a dataclass to be JSON encoded"
        )
    return _shallow_fields(proxy)


def proxy_payload_type(
    payload: Payload,
) -> type[serialproxy.proxy.SerializationProxy]:
    """Registered proxy type named by the payload's ``proxyType`` metadata.

    Raises:
        serialproxy.exceptions.InvalidObjectError: The name is a guarded type
            rather than a proxy.
        RuntimeError: The name is not registered.
    """
    name = payload.metadata.get("proxyType", b"<unknown>").decode()
    proxy_cls = serialproxy.proxy.lookup_proxy_type(name)
    if proxy_cls is not None:
        return proxy_cls
    holder_cls = serialproxy.proxy.lookup_holder_type(name)
    if holder_cls is not None:
        serialproxy.proxy.reject_direct(holder_cls)
    raise RuntimeError(f"Unknown proxy type {name}")


class ProxyJSONPayloadConverter(EncodingPayloadConverter):
    """'json/proxy': a guarded type as the JSON of its proxy.

    The proxy type is named in the ``proxyType`` metadata. Decoding rebuilds
    the proxy from the JSON with :py:func:`value_to_type` and resolves it, so
    the holder's constructor always runs.
    """

    def __init__(self, *, encoder: type[json.JSONEncoder] = ProxyJSONEncoder) -> None:
        """Create a proxy JSON converter.

        Args:
            encoder: Encoder for the proxy fields.
        """
        self._encoder = encoder

    @property
    def encoding(self) -> str:
        """See base class."""
        return "json/proxy"

    def to_payload(self, value: Any) -> Payload | None:
        """See base class."""
        if not isinstance(value, serialproxy.proxy.ProxySerializable):
            return None
        proxy = serialproxy.proxy.write_proxy(value)
        data = json.dumps(
            proxy_fields(proxy),
            cls=self._encoder,
            separators=(",", ":"),
            sort_keys=True,
        )
        return Payload(
            metadata={
                "encoding": self.encoding.encode(),
                "proxyType": serialproxy.proxy.type_name(type(proxy)).encode(),
            },
            data=data.encode(),
        )

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """See base class. The type hint is not used, the metadata decides."""
        proxy_cls = proxy_payload_type(payload)
        try:
            fields = json.loads(payload.data)
        except json.JSONDecodeError as err:
            raise RuntimeError("Failed parsing") from err
        try:
            proxy = value_to_type(proxy_cls, fields)
        except TypeError as err:
            raise RuntimeError(
                f"Failed building proxy {serialproxy.proxy.type_name(proxy_cls)}"
            ) from err
        return serialproxy.proxy.resolve_proxy(proxy)


class JSONPlainPayloadConverter(EncodingPayloadConverter):
    """'json/plain': anything the encoder can write.

    Accepts every value, so it must come last in a composite. Without a type
    hint, decoding returns plain JSON values. With one, values are rebuilt by
    :py:func:`value_to_type`, which resolves guarded types through their
    proxy.
    """

    def __init__(
        self,
        *,
        encoder: type[json.JSONEncoder] = ProxyJSONEncoder,
        decoder: type[json.JSONDecoder] | None = None,
        encoding: str = "json/plain",
    ) -> None:
        """Create a plain JSON converter.

        Args:
            encoder: Encoder class.
            decoder: Decoder class, the default decoder if None.
            encoding: Encoding name, for converters registered side by side.
        """
        self._encoder = encoder
        self._decoder = decoder
        self._encoding = encoding

    @property
    def encoding(self) -> str:
        """See base class."""
        return self._encoding

    def to_payload(self, value: Any) -> Payload | None:
        """See base class.

        Raises:
            TypeError: The encoder cannot write the value.
        """
        data = json.dumps(
            value, cls=self._encoder, separators=(",", ":"), sort_keys=True
        )
        return Payload(
            metadata={"encoding": self._encoding.encode()}, data=data.encode()
        )

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """See base class."""
        try:
            obj = json.loads(payload.data, cls=self._decoder)
        except json.JSONDecodeError as err:
            raise RuntimeError("Failed parsing") from err
        return value_to_type(type_hint, obj) if type_hint else obj


class PicklePayloadConverter(EncodingPayloadConverter):
    """'binary/pickle': any picklable value, through :py:mod:`serialproxy.pickling`.

    Guarded types are written as their proxy, and streams that reach a guarded
    type any other way are rejected.

    .. warning::
        Accepts every value, so it must come last in a composite. Only decode
        untrusted payloads with ``allowed_modules`` set.
    """

    def __init__(
        self,
        *,
        protocol: int | None = None,
        allowed_modules: Sequence[str] | None = None,
    ) -> None:
        """Create a pickle converter.

        Args:
            protocol: Pickle protocol to write with.
            allowed_modules: Modules globals may be loaded from. See
                :py:class:`serialproxy.pickling.ProxyUnpickler`.
        """
        self._protocol = protocol
        self._allowed_modules = allowed_modules

    @property
    def encoding(self) -> str:
        """See base class."""
        return "binary/pickle"

    def to_payload(self, value: Any) -> Payload | None:
        """See base class."""
        return Payload(
            metadata={"encoding": self.encoding.encode()},
            data=serialproxy.pickling.dumps(value, self._protocol),
        )

    def from_payload(
        self,
        payload: Payload,
        type_hint: type | None = None,
    ) -> Any:
        """See base class."""
        try:
            return serialproxy.pickling.loads(
                payload.data, allowed_modules=self._allowed_modules
            )
        except (EOFError, pickle.UnpicklingError) as err:
            raise RuntimeError("Failed unpickling") from err


class PicklingPayloadConverter(CompositePayloadConverter):
    """Payload converter pickling everything that is not None or bytes."""

    def __init__(
        self,
        *,
        protocol: int | None = None,
        allowed_modules: Sequence[str] | None = None,
    ) -> None:
        """Create a pickling payload converter.

        Args:
            protocol: Pickle protocol to write with.
            allowed_modules: Modules globals may be loaded from.
        """
        super().__init__(
            BinaryNullPayloadConverter(),
            BinaryPlainPayloadConverter(),
            PicklePayloadConverter(protocol=protocol, allowed_modules=allowed_modules),
        )


class PayloadCodec(ABC):
    """Transforms payload bytes, e.g. compression or encryption."""

    @abstractmethod
    async def encode(self, payloads: Sequence[Payload]) -> list[Payload]:
        """Encode payloads without mutating them."""
        raise NotImplementedError

    @abstractmethod
    async def decode(self, payloads: Sequence[Payload]) -> list[Payload]:
        """Decode payloads without mutating them."""
        raise NotImplementedError


class ZlibPayloadCodec(PayloadCodec):
    """Codec compressing payload data with zlib.

    Compressed payloads keep their metadata and gain a ``compression`` key.
    Payloads without that key are passed through on decode.
    """

    def __init__(self, level: int = -1) -> None:
        """Create a zlib codec.

        Args:
            level: zlib compression level, -1 for the library default.
        """
        if not -1 <= level <= 9:
            raise ValueError(f"Compression level must be between -1 and 9, got {level}")
        self._level = level

    async def encode(self, payloads: Sequence[Payload]) -> list[Payload]:
        """See base class."""
        return [
            Payload(
                metadata={**p.metadata, "compression": b"zlib"},
                data=zlib.compress(p.data, self._level),
            )
            for p in payloads
        ]

    async def decode(self, payloads: Sequence[Payload]) -> list[Payload]:
        """See base class."""
        decoded = []
        for p in payloads:
            if p.metadata.get("compression") != b"zlib":
                decoded.append(p)
                continue
            try:
                data = zlib.decompress(p.data)
            except zlib.error as err:
                raise RuntimeError("Failed decompressing payload") from err
            metadata = {k: v for k, v in p.metadata.items() if k != "compression"}
            decoded.append(Payload(metadata=metadata, data=data))
        return decoded


@dataclass(frozen=True)
class DataConverter:
    """Payload converter followed by an optional codec."""

    payload_converter_class: Callable[[], PayloadConverter] = DefaultPayloadConverter
    """Class (or other nullary factory) of the payload converter."""

    payload_codec: PayloadCodec | None = None
    """Codec applied after conversion, if any."""

    payload_converter: PayloadConverter = dataclasses.field(init=False)
    """Payload converter built from :py:attr:`payload_converter_class`."""

    default: ClassVar[DataConverter]
    """Shared default data converter."""

    def __post_init__(self) -> None:  # noqa: D105
        object.__setattr__(self, "payload_converter", self.payload_converter_class())

    async def encode(self, values: Sequence[Any]) -> list[Payload]:
        """Convert values to payloads, then run the codec."""
        payloads = self.payload_converter.to_payloads(values)
        if self.payload_codec:
            payloads = await self.payload_codec.encode(payloads)
        return payloads

    async def decode(
        self,
        payloads: Sequence[Payload],
        type_hints: list[type] | None = None,
    ) -> list[Any]:
        """Run the codec in reverse, then convert payloads to values.

        Raises:
            serialproxy.exceptions.InvalidObjectError: A payload reconstructs
                a guarded type without its proxy.
            serialproxy.exceptions.InvariantViolationError: A proxy holds
                values its holder rejects.
        """
        if self.payload_codec:
            payloads = await self.payload_codec.decode(payloads)
        return self.payload_converter.from_payloads(payloads, type_hints)


DefaultPayloadConverter.default_encoding_payload_converters = (
    BinaryNullPayloadConverter(),
    BinaryPlainPayloadConverter(),
    ProxyJSONPayloadConverter(),
    # Accepts everything, keep last
    JSONPlainPayloadConverter(),
)

DataConverter.default = DataConverter()

PayloadConverter.default = DataConverter.default.payload_converter


def _parse_datetime(value: str) -> datetime:
    if sys.version_info < (3, 11):
        return parser.isoparse(value)
    return datetime.fromisoformat(value)


def value_to_type(hint: Any, value: Any) -> Any:
    """Rebuild a value of the hinted type from a value loaded from JSON.

    Supported hints are the JSON scalars, :py:class:`~datetime.datetime`,
    guarded types, dataclasses, unions, and dict, list, tuple and set
    generics of those. A guarded type is never built from its fields: the value
    becomes the bound proxy, which is then resolved.

    Raises:
        TypeError: The value does not fit the hint, or the hint is not
            supported.
        serialproxy.exceptions.InvariantViolationError: A guarded type rejected
            its proxy. Never masked by trying another union member.
    """
    if hint is Any or hint is object:
        return value
    if hint is None or hint is type(None):
        if value is not None:
            raise TypeError(f"Expected None, got {type(value)}")
        return None
    if hint in (bool, str):
        if not isinstance(value, hint):
            raise TypeError(f"Expected {hint.__name__}, got {type(value)}")
        return value
    if hint is int or hint is float:
        # bool is an int, and an int hint must not truncate
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"Expected {hint.__name__}, got {type(value)}")
        if hint is int and isinstance(value, float):
            raise TypeError(f"Expected int, got {value!r}")
        return hint(value)
    if hint is datetime:
        if isinstance(value, datetime):
            return value
        if not isinstance(value, str):
            raise TypeError(f"Expected ISO 8601 string, got {type(value)}")
        try:
            return _parse_datetime(value)
        except ValueError as err:
            raise TypeError(f"Invalid ISO 8601 string {value!r}") from err
    if isinstance(hint, type) and serialproxy.proxy.is_guarded(hint):
        proxy = value_to_type(serialproxy.proxy.bound_proxy(hint), value)
        return serialproxy.proxy.resolve_proxy(proxy)
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        return _to_dataclass(hint, value)

    origin = get_origin(hint) or hint
    args = get_args(hint)
    if origin is Union or origin is UnionType:
        for arg in args:
            try:
                return value_to_type(arg, value)
            except serialproxy.exceptions.InvariantViolationError:
                raise
            except (TypeError, ValueError):
                continue
        raise TypeError(f"No member of {hint} accepts {value!r}")
    if not isinstance(origin, type):
        raise TypeError(f"Unsupported type hint {hint}")
    if issubclass(origin, collections.abc.Mapping):
        return _to_dict(hint, args, value)
    if issubclass(origin, collections.abc.Iterable) and not issubclass(
        origin, (str, bytes, bytearray)
    ):
        return _to_collection(hint, origin, args, value)
    raise TypeError(f"Unsupported type hint {hint}")


def _to_dataclass(hint: type, value: Any) -> Any:
    if not isinstance(value, dict):
        raise TypeError(f"Expected object for {hint.__name__}, got {type(value)}")
    field_hints = get_type_hints(hint)
    kwargs = {}
    # Unknown keys are ignored, missing required ones fail on instantiation
    for field in dataclasses.fields(hint):
        if not field.init or field.name not in value:
            continue
        try:
            kwargs[field.name] = value_to_type(field_hints[field.name], value[field.name])
        except TypeError as err:
            raise TypeError(f"Failed converting {hint.__name__}.{field.name}") from err
    try:
        return hint(**kwargs)
    except TypeError as err:
        raise TypeError(f"Failed instantiating {hint.__name__}") from err


def _to_dict(hint: Any, args: tuple, value: Any) -> dict:
    if not isinstance(value, dict):
        raise TypeError(f"Expected object for {hint}, got {type(value)}")
    key_hint, item_hint = args if len(args) == 2 else (Any, Any)
    result = {}
    for key, item in value.items():
        # JSON object keys are always strings
        if key_hint in (int, float) and isinstance(key, str):
            try:
                key = key_hint(key)
            except ValueError as err:
                raise TypeError(f"Invalid {key_hint.__name__} key {key!r}") from err
        else:
            key = value_to_type(key_hint, key)
        result[key] = value_to_type(item_hint, item)
    return result


def _to_collection(hint: Any, origin: type, args: tuple, value: Any) -> Any:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"Expected array for {hint}, got {type(value)}")
    if origin is tuple and args and args[-1] is not Ellipsis:
        if len(args) != len(value):
            raise TypeError(f"Expected {len(args)} items for {hint}, got {len(value)}")
        item_hints = list(args)
    else:
        item_hints = [args[0] if args else Any] * len(value)
    items = []
    for index, (item_hint, item) in enumerate(zip(item_hints, value)):
        try:
            items.append(value_to_type(item_hint, item))
        except TypeError as err:
            raise TypeError(f"Failed converting {hint} index {index}") from err
    if issubclass(origin, tuple):
        return tuple(items)
    if issubclass(origin, frozenset):
        return frozenset(items)
    if issubclass(origin, (set, collections.abc.Set)):
        return set(items)
    return items

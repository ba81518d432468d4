"""A data converter for Pydantic v2.

To use, pass ``pydantic_data_converter`` wherever a
:py:class:`serialproxy.converter.DataConverter` is expected.

Guarded types can be used as fields of pydantic models. They validate through
their proxy and the holder's constructor, and serialize as their proxy. A
rejected value surfaces as :py:class:`pydantic.ValidationError`.

Guarded types on their own use the ``json/proxy`` encoding, so their payloads
are interchangeable with those of the default converter. A rejected proxy
raises :py:class:`serialproxy.exceptions.InvariantViolationError` there, the
same as with the default converter.

Pydantic v1 is not supported.
"""

from dataclasses import dataclass
from typing import Any, Optional, Type

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, SchemaSerializer
from pydantic_core.core_schema import any_schema

import serialproxy.proxy
from serialproxy.converter import (
    CompositePayloadConverter,
    DataConverter,
    DefaultPayloadConverter,
    EncodingPayloadConverter,
    JSONPlainPayloadConverter,
    Payload,
    ProxyJSONPayloadConverter,
    proxy_fields,
    proxy_payload_type,
)

# Note that ProxySerializable implements __get_pydantic_core_schema__ so that
# pydantic goes through the proxy for guarded types held by models.


@dataclass
class ToJsonOptions:
    """Options for converting to JSON with pydantic."""

    exclude_unset: bool = False


def _proxy_fallback(value: Any) -> Any:
    # Only reached for values pydantic cannot infer, such as holders that are
    # not inside a model
    if isinstance(value, serialproxy.proxy.ProxySerializable):
        return proxy_fields(serialproxy.proxy.write_proxy(value))
    raise PydanticSerializationError(f"Unable to serialize unknown type: {type(value)}")


class PydanticProxyJSONPayloadConverter(EncodingPayloadConverter):
    """Pydantic version of :py:class:`serialproxy.converter.ProxyJSONPayloadConverter`.

    The proxy is written and read by pydantic in strict mode, so a field of the
    wrong type is never coerced into one the holder would accept.
    """

    @property
    def encoding(self) -> str:
        """See base class."""
        return "json/proxy"

    def to_payload(self, value: Any) -> Optional[Payload]:
        """See base class."""
        if not isinstance(value, serialproxy.proxy.ProxySerializable):
            return None
        proxy = serialproxy.proxy.write_proxy(value)
        proxy_type = type(proxy)
        return Payload(
            metadata={
                "encoding": self.encoding.encode(),
                "proxyType": serialproxy.proxy.type_name(proxy_type).encode(),
            },
            data=TypeAdapter(proxy_type).dump_json(proxy),
        )

    def from_payload(
        self,
        payload: Payload,
        type_hint: Optional[Type] = None,
    ) -> Any:
        """See base class."""
        proxy_type = proxy_payload_type(payload)
        try:
            proxy = TypeAdapter(proxy_type).validate_json(payload.data, strict=True)
        except ValidationError as err:
            raise RuntimeError(
                f"Failed building proxy {serialproxy.proxy.type_name(proxy_type)}"
            ) from err
        return serialproxy.proxy.resolve_proxy(proxy)


class PydanticJSONPlainPayloadConverter(EncodingPayloadConverter):
    """Pydantic JSON payload converter.

    Supports conversion of all types supported by Pydantic to and from JSON,
    including guarded types, which are written as their proxy wherever they
    appear.

    See https://docs.pydantic.dev/latest/api/standard_library_types/
    """

    def __init__(self, to_json_options: Optional[ToJsonOptions] = None):
        """Create a new payload converter."""
        self._schema_serializer = SchemaSerializer(any_schema())
        self._to_json_options = to_json_options or ToJsonOptions()

    @property
    def encoding(self) -> str:
        """See base class."""
        return "json/plain"

    def to_payload(self, value: Any) -> Optional[Payload]:
        """See base class.

        Raises:
            pydantic_core.PydanticSerializationError: Pydantic cannot write the
                value.
        """
        data = self._schema_serializer.to_json(
            value,
            exclude_unset=self._to_json_options.exclude_unset,
            fallback=_proxy_fallback,
        )
        return Payload(metadata={"encoding": self.encoding.encode()}, data=data)

    def from_payload(
        self,
        payload: Payload,
        type_hint: Optional[Type] = None,
    ) -> Any:
        """See base class.

        Uses ``pydantic.TypeAdapter.validate_json`` to construct an
        instance of the type specified by ``type_hint`` from the JSON payload.
        Guarded types in the hint are built from their proxy.
        """
        _type_hint = type_hint if type_hint is not None else Any
        return TypeAdapter(_type_hint).validate_json(payload.data)


class PydanticPayloadConverter(CompositePayloadConverter):
    """Payload converter for payloads containing pydantic model instances.

    Both JSON converters of the default converter are replaced by their
    pydantic versions.
    """

    def __init__(self, to_json_options: Optional[ToJsonOptions] = None) -> None:
        """Initialize object"""
        replacements = {
            JSONPlainPayloadConverter: PydanticJSONPlainPayloadConverter(
                to_json_options
            ),
            ProxyJSONPayloadConverter: PydanticProxyJSONPayloadConverter(),
        }
        super().__init__(
            *(
                replacements.get(type(c), c)
                for c in DefaultPayloadConverter.default_encoding_payload_converters
            )
        )


pydantic_data_converter = DataConverter(
    payload_converter_class=PydanticPayloadConverter
)
"""Pydantic data converter.

Supports conversion of all types supported by Pydantic to and from JSON.
"""

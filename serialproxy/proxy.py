"""Serialization proxy protocol.

A guarded type ("holder") extends :py:class:`ProxySerializable` and is bound to
a :py:class:`SerializationProxy` with the :py:func:`serialization_proxy` class
decorator:

.. code-block:: python

    @dataclass(frozen=True)
    class CounterProxy(SerializationProxy):
        count: int

        def read_resolve(self) -> Counter:
            return Counter(self.count)


    @serialization_proxy(CounterProxy)
    class Counter(ProxySerializable):
        def __init__(self, count: int) -> None:
            if count < 0:
                raise InvariantViolationError("must be non-negative", field="count", value=count)
            self._count = count

        def write_replace(self) -> CounterProxy:
            return CounterProxy(self._count)

When serialized, the holder is replaced by its proxy. When deserialized, the
proxy rebuilds the holder through the holder's own constructor, so every
holder that leaves deserialization passed the same validation as one built
directly. Any attempt to reconstruct the holder directly from its fields raises
:py:class:`serialproxy.exceptions.InvalidObjectError`.

Guarded types cannot be subclassed, and must not be reachable from their own
proxy state (no cycles).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, ClassVar, NoReturn

import serialproxy._log_utils
import serialproxy.exceptions
from serialproxy.types import ClassType

try:
    import pydantic
    import pydantic_core
    from pydantic_core import core_schema

    HAVE_PYDANTIC = True
except ImportError:
    HAVE_PYDANTIC = False


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter that adds details about the guarded type to the log.

    Details are given to a logging call as a ``proxy_details`` keyword
    argument, which is removed before the call reaches the logger.

    Attributes:
        proxy_info_on_message: Boolean for whether a string representation of
            the details will be appended to each message. Default is True.
        proxy_info_on_extra: Boolean for whether the details will be added to
            the ``extra`` dictionary, making them present on the
            ``LogRecord.__dict__`` for use by others. Default is True.
        log_extra_mode: How the details are placed on ``extra``. See
            :py:data:`serialproxy._log_utils.LogExtraMode`. Default is
            ``"dict"``.

    Values added to ``extra`` are merged with the ``extra`` dictionary from a
    logging call, with values from the logging call taking precedence.
    """

    def __init__(
        self, logger: logging.Logger, extra: Mapping[str, Any] | None
    ) -> None:
        """Create the logger adapter."""
        super().__init__(logger, extra or {})
        self.proxy_info_on_message = True
        self.proxy_info_on_extra = True
        self.log_extra_mode: serialproxy._log_utils.LogExtraMode = "dict"

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        """Override to add guarded type details."""
        details: Mapping[str, Any] = kwargs.pop("proxy_details", None) or {}
        extra: dict[str, Any] = {}
        if details and self.proxy_info_on_extra:
            serialproxy._log_utils._apply_proxy_context_to_extra(
                extra,
                key="serialproxy",
                prefix="serialproxy",
                ctx=details,
                mode=self.log_extra_mode,
            )
        kwargs["extra"] = {**extra, **(kwargs.get("extra") or {})}
        if details and self.proxy_info_on_message:
            msg = f"{msg} ({dict(details)})"
        return (msg, kwargs)

    @property
    def base_logger(self) -> logging.Logger:
        """Underlying logger usable for actions such as adding
        handlers/formatters.
        """
        return self.logger


logger = LoggerAdapter(logging.getLogger(__name__), None)
"""Logger that will have guarded type details embedded."""


class SerializationProxy(ABC):
    """Base for serialization proxies.

    A proxy is a plain data carrier with the same logical fields as its holder.
    It does no validation of its own. It only exists between the moment its
    holder is written and the moment a new holder is read back.
    """

    __holder_type__: ClassVar[type[ProxySerializable] | None] = None
    """Holder type this proxy resolves to. Set by
    :py:func:`serialization_proxy`."""

    @abstractmethod
    def read_resolve(self) -> Any:
        """Build the holder this proxy stands in for.

        Implementers must use the holder's ordinary constructor.

        Returns:
            A freshly constructed holder.

        Raises:
            serialproxy.exceptions.InvariantViolationError: The copied field
                values fail the holder's validation.
        """
        raise NotImplementedError


class ProxySerializable(ABC):
    """Base for types that are only serialized through a proxy.

    Subclasses implement :py:meth:`write_replace` and are bound to their proxy
    type with :py:func:`serialization_proxy`. A bound type cannot be
    subclassed.
    """

    __slots__ = ()

    __serialization_proxy__: ClassVar[type[SerializationProxy] | None] = None
    """Proxy type for this holder. Set by :py:func:`serialization_proxy`."""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for base in cls.__mro__[1:]:
            if base.__dict__.get("__serialization_proxy__") is not None:
                raise serialproxy.exceptions.ProxyDefinitionError(
                    f"Cannot subclass {type_name(base)}, it is serialized through "
                    f"{type_name(base.__dict__['__serialization_proxy__'])}"
                )

    @abstractmethod
    def write_replace(self) -> SerializationProxy:
        """Create the proxy to serialize in place of this object.

        The proxy must copy the current field state and nothing else.
        """
        raise NotImplementedError

    def __reduce__(self) -> tuple[Callable[[Any], Any], tuple[Any, ...]]:
        """Pickle support.

        The stream holds the proxy and the resolver, never the holder's own
        fields.
        """
        return (resolve_proxy, (write_proxy(self),))

    def __setstate__(self, state: object) -> NoReturn:
        """Pickle support.

        Always raises. A guarded type is only reconstructed through its proxy.
        """
        reject_direct(type(self))

    if HAVE_PYDANTIC:
        # Validate by building the proxy then resolving it, and serialize as
        # the proxy.
        # https://docs.pydantic.dev/latest/concepts/types/#customizing-validation-with-__get_pydantic_core_schema__
        @classmethod
        def __get_pydantic_core_schema__(
            cls,
            source_type: Any,
            handler: pydantic.GetCoreSchemaHandler,
        ) -> pydantic_core.CoreSchema:
            proxy_schema = handler.generate_schema(bound_proxy(cls))
            from_proxy = core_schema.no_info_after_validator_function(
                resolve_proxy, proxy_schema
            )
            return core_schema.json_or_python_schema(
                json_schema=from_proxy,
                python_schema=core_schema.union_schema(
                    [core_schema.is_instance_schema(cls), from_proxy]
                ),
                serialization=core_schema.plain_serializer_function_ser_schema(
                    write_proxy, return_schema=proxy_schema
                ),
            )


_registry_lock = threading.Lock()
_holder_types: dict[str, type[ProxySerializable]] = {}
_proxy_types: dict[str, type[SerializationProxy]] = {}


def type_name(cls: type) -> str:
    """Qualified name used to identify a type in streams and logs."""
    return f"{cls.__module__}.{cls.__qualname__}"


def serialization_proxy(
    proxy_cls: type[SerializationProxy],
) -> Callable[[ClassType], ClassType]:
    """Class decorator binding a holder type to its proxy type.

    Both types are registered by qualified name so stream readers can tell a
    proxy from a holder.

    Args:
        proxy_cls: Proxy type used to serialize the decorated class.

    Raises:
        serialproxy.exceptions.ProxyDefinitionError: The decorated class is not
            a :py:class:`ProxySerializable`, the proxy type is not a
            :py:class:`SerializationProxy`, or either is already bound to
            something else.
    """

    def decorator(cls: ClassType) -> ClassType:
        if not isinstance(cls, type) or not issubclass(cls, ProxySerializable):
            raise serialproxy.exceptions.ProxyDefinitionError(
                f"{cls} must extend ProxySerializable"
            )
        if not isinstance(proxy_cls, type) or not issubclass(
            proxy_cls, SerializationProxy
        ):
            raise serialproxy.exceptions.ProxyDefinitionError(
                f"{proxy_cls} must extend SerializationProxy"
            )
        existing = proxy_cls.__dict__.get("__holder_type__")
        if existing is not None and existing is not cls:
            raise serialproxy.exceptions.ProxyDefinitionError(
                f"{type_name(proxy_cls)} is already the proxy of {type_name(existing)}"
            )
        holder_name = type_name(cls)
        proxy_name = type_name(proxy_cls)
        with _registry_lock:
            for name, registry, new in (
                (holder_name, _holder_types, cls),
                (proxy_name, _proxy_types, proxy_cls),
            ):
                registered = registry.get(name)
                if registered is not None and registered is not new:
                    raise serialproxy.exceptions.ProxyDefinitionError(
                        f"Type name {name} is already registered"
                    )
            if holder_name in _proxy_types or proxy_name in _holder_types:
                raise serialproxy.exceptions.ProxyDefinitionError(
                    f"{holder_name} and {proxy_name} cannot be both holder and proxy"
                )
            _holder_types[holder_name] = cls
            _proxy_types[proxy_name] = proxy_cls
        cls.__serialization_proxy__ = proxy_cls
        proxy_cls.__holder_type__ = cls
        return cls

    return decorator


def is_guarded(cls: type) -> bool:
    """Whether the given type is a holder bound to a proxy."""
    return (
        isinstance(cls, type)
        and issubclass(cls, ProxySerializable)
        and cls.__dict__.get("__serialization_proxy__") is not None
    )


def lookup_holder_type(name: str) -> type[ProxySerializable] | None:
    """Registered holder type for the qualified name, if any."""
    with _registry_lock:
        return _holder_types.get(name)


def lookup_proxy_type(name: str) -> type[SerializationProxy] | None:
    """Registered proxy type for the qualified name, if any."""
    with _registry_lock:
        return _proxy_types.get(name)


def bound_proxy(cls: type[ProxySerializable]) -> type[SerializationProxy]:
    """Proxy type bound to the given holder type.

    Raises:
        serialproxy.exceptions.ProxyDefinitionError: The type is not bound.
    """
    proxy_cls = cls.__dict__.get("__serialization_proxy__")
    if proxy_cls is None:
        raise serialproxy.exceptions.ProxyDefinitionError(
            f"{type_name(cls)} has no serialization proxy, decorate it with "
            "@serialization_proxy"
        )
    return proxy_cls


def _details(
    holder_cls: type, proxy_cls: type | None
) -> dict[str, Any]:
    details = {"holder_type": type_name(holder_cls)}
    if proxy_cls is not None:
        details["proxy_type"] = type_name(proxy_cls)
    return details


def write_proxy(holder: ProxySerializable) -> SerializationProxy:
    """Substitute the proxy for the given holder.

    Raises:
        serialproxy.exceptions.ProxyDefinitionError: The holder is not bound
            to a proxy, or its :py:meth:`ProxySerializable.write_replace`
            returned something other than its bound proxy type.
    """
    holder_cls = type(holder)
    proxy_cls = bound_proxy(holder_cls)
    proxy = holder.write_replace()
    if type(proxy) is not proxy_cls:
        raise serialproxy.exceptions.ProxyDefinitionError(
            f"{type_name(holder_cls)}.write_replace returned {type_name(type(proxy))}, "
            f"expected {type_name(proxy_cls)}"
        )
    logger.debug(
        "Substituted serialization proxy",
        proxy_details=_details(holder_cls, proxy_cls),
    )
    return proxy


def resolve_proxy(proxy: Any) -> Any:
    """Resolve a deserialized proxy into a freshly constructed holder.

    This is the reconstruction callable written into pickle streams.

    Raises:
        serialproxy.exceptions.InvalidObjectError: The value is not a
            serialization proxy.
        serialproxy.exceptions.InvariantViolationError: The holder's
            constructor rejected the proxy's field values.
        serialproxy.exceptions.ProxyDefinitionError: The proxy resolved to a
            value that is not its bound holder type.
    """
    if not isinstance(proxy, SerializationProxy):
        raise serialproxy.exceptions.InvalidObjectError(
            "Expected a serialization proxy", type_name=type_name(type(proxy))
        )
    proxy_cls = type(proxy)
    holder_cls = proxy_cls.__dict__.get("__holder_type__")
    details = _details(holder_cls or proxy_cls, proxy_cls)
    try:
        holder = proxy.read_resolve()
    except serialproxy.exceptions.InvariantViolationError:
        logger.debug("Serialization proxy failed validation", proxy_details=details)
        raise
    if holder_cls is not None and type(holder) is not holder_cls:
        raise serialproxy.exceptions.ProxyDefinitionError(
            f"{type_name(proxy_cls)}.read_resolve returned {type_name(type(holder))}, "
            f"expected {type_name(holder_cls)}"
        )
    logger.debug("Resolved serialization proxy", proxy_details=details)
    return holder


def reject_direct(cls: type) -> NoReturn:
    """Refuse a direct reconstruction of the given guarded type.

    Raises:
        serialproxy.exceptions.InvalidObjectError: Always.
    """
    proxy_cls = cls.__dict__.get("__serialization_proxy__")
    logger.warning(
        "Rejected direct deserialization of guarded type",
        proxy_details=_details(cls, proxy_cls),
    )
    raise serialproxy.exceptions.InvalidObjectError(
        "Proxy required", type_name=type_name(cls)
    )

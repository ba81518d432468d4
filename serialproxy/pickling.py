"""Pickle support for guarded types.

Guarded types already pickle through their proxy with the standard
:py:mod:`pickle` module (see :py:meth:`ProxySerializable.__reduce__
<serialproxy.proxy.ProxySerializable.__reduce__>`). Plain :py:func:`pickle.loads`
rejects any stream that hands state to a guarded type. It cannot reject a
stream that only allocates one (``copyreg._reconstructor`` or ``NEWOBJ`` with
no state), which yields an empty instance. The pickler and unpickler here add
the checks plain pickle cannot make:

* :py:class:`ProxyPickler` fails fast on object graphs that cycle back through
  a guarded type instead of recursing without end.
* :py:class:`ProxyUnpickler` rejects any stream that names a guarded type
  directly, before an instance is ever allocated, and any reconstructor call
  given a guarded type. It only loads the resolver and registered proxy types
  from serialproxy itself, and can restrict every other global the stream
  loads to a set of modules.

.. warning::
    Pickle can execute arbitrary code while loading. Only use
    ``allowed_modules=None`` with trusted data, and only allow modules that do
    not expose callables returning guarded classes.
"""

from __future__ import annotations

import _compat_pickle
import copyreg
import functools
import io
import logging
import pickle
from collections.abc import Callable, Sequence
from typing import IO, Any

import serialproxy.exceptions
import serialproxy.proxy

logger = logging.getLogger(__name__)

# Globals a proxy stream needs regardless of the allowed modules
_always_allowed = frozenset(
    [
        ("serialproxy.proxy", "resolve_proxy"),
        ("copyreg", "_reconstructor"),
        ("builtins", "object"),
    ]
)


class ProxyPickler(pickle.Pickler):
    """Pickler that writes guarded types as their proxy and detects cycles."""

    def __init__(
        self, file: IO[bytes], protocol: int | None = None, **kwargs: Any
    ) -> None:
        """Create a proxy pickler.

        Args:
            file: Binary file to write to.
            protocol: Pickle protocol, defaults to
                :py:data:`pickle.DEFAULT_PROTOCOL`.
            kwargs: Passed through to :py:class:`pickle.Pickler`.
        """
        super().__init__(file, protocol, **kwargs)
        # Holders whose reduction started. Completed ones are memoized by the
        # pickler and never seen here again, so a repeat means a cycle.
        self._in_flight: set[int] = set()

    def reducer_override(self, obj: Any) -> Any:
        """See :py:meth:`pickle.Pickler.reducer_override`."""
        if not serialproxy.proxy.is_guarded(type(obj)):
            return NotImplemented
        if id(obj) in self._in_flight:
            raise serialproxy.exceptions.CyclicGraphError(
                serialproxy.proxy.type_name(type(obj))
            )
        self._in_flight.add(id(obj))
        return (
            serialproxy.proxy.resolve_proxy,
            (serialproxy.proxy.write_proxy(obj),),
        )


class ProxyUnpickler(pickle.Unpickler):
    """Unpickler that refuses direct reconstruction of guarded types."""

    def __init__(
        self,
        file: IO[bytes],
        *,
        allowed_modules: Sequence[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Create a proxy unpickler.

        Args:
            file: Binary file to read from.
            allowed_modules: If present, only globals from these modules (or
                their submodules) may be loaded, besides the ones every proxy
                stream needs. If None, any global may be loaded.
            kwargs: Passed through to :py:class:`pickle.Unpickler`.
        """
        super().__init__(file, **kwargs)
        self._allowed_modules = (
            tuple(allowed_modules) if allowed_modules is not None else None
        )

    def find_class(self, module: str, name: str) -> Any:
        """See :py:meth:`pickle.Unpickler.find_class`.

        Raises:
            serialproxy.exceptions.InvalidObjectError: The global is a guarded
                type.
            pickle.UnpicklingError: The global is not in an allowed module, or
                is a part of serialproxy a proxy stream never needs.
        """
        module, name = _current_name(module, name)
        if not self._is_allowed(module, name):
            logger.warning("Refused to load global %s.%s", module, name)
            raise pickle.UnpicklingError(f"global '{module}.{name}' is forbidden")
        found = super().find_class(module, name)
        if serialproxy.proxy.is_guarded(found):
            serialproxy.proxy.reject_direct(found)
        for original, checked in _reconstructors:
            if found is original:
                return checked
        if _is_own_module(module) and not _is_proxy_global(found):
            logger.warning("Refused to load global %s.%s", module, name)
            raise pickle.UnpicklingError(f"global '{module}.{name}' is forbidden")
        return found

    def _is_allowed(self, module: str, name: str) -> bool:
        if self._allowed_modules is None or (module, name) in _always_allowed:
            return True
        return any(
            module == allowed or module.startswith(f"{allowed}.")
            for allowed in self._allowed_modules
        )


def _current_name(module: str, name: str) -> tuple[str, str]:
    # Protocol 0 and 1 streams use Python 2 names, mapped the same way
    # pickle.Unpickler maps them with fix_imports
    if (module, name) in _compat_pickle.NAME_MAPPING:
        return _compat_pickle.NAME_MAPPING[(module, name)]
    return _compat_pickle.IMPORT_MAPPING.get(module, module), name


def _is_own_module(module: str) -> bool:
    return module == "serialproxy" or module.startswith("serialproxy.")


def _is_proxy_global(found: Any) -> bool:
    # Only the resolver and registered proxy types. Registry lookups and the
    # like would hand a guarded class to the stream without naming it.
    if found is serialproxy.proxy.resolve_proxy:
        return True
    return (
        isinstance(found, type)
        and issubclass(found, serialproxy.proxy.SerializationProxy)
        and serialproxy.proxy.lookup_proxy_type(serialproxy.proxy.type_name(found))
        is found
    )


def _checked(reconstruct: Callable[..., Any]) -> Callable[..., Any]:
    # The class argument of a reconstructor may come from another call instead
    # of a global, so find_class never sees it
    @functools.wraps(reconstruct)
    def checked_reconstruct(cls: type, *args: Any) -> Any:
        if serialproxy.proxy.is_guarded(cls):
            serialproxy.proxy.reject_direct(cls)
        return reconstruct(cls, *args)

    return checked_reconstruct


_reconstructors = tuple(
    (fn, _checked(fn))
    for fn in (copyreg._reconstructor, copyreg.__newobj__, copyreg.__newobj_ex__)
)


def dumps(obj: Any, protocol: int | None = None) -> bytes:
    """Pickle the object with :py:class:`ProxyPickler`.

    Raises:
        serialproxy.exceptions.CyclicGraphError: The object graph cycles back
            through a guarded type.
    """
    buf = io.BytesIO()
    ProxyPickler(buf, protocol).dump(obj)
    return buf.getvalue()


def loads(data: bytes, *, allowed_modules: Sequence[str] | None = None) -> Any:
    """Unpickle the data with :py:class:`ProxyUnpickler`.

    Raises:
        serialproxy.exceptions.InvalidObjectError: The data reconstructs a
            guarded type without its proxy.
        serialproxy.exceptions.InvariantViolationError: A proxy in the data
            holds values its holder rejects.
        pickle.UnpicklingError: The data is malformed or loads a forbidden
            global.
    """
    return ProxyUnpickler(io.BytesIO(data), allowed_modules=allowed_modules).load()

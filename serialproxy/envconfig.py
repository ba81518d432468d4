"""Environment and file-based configuration for data conversion.

This module provides utilities to load :py:class:`serialproxy.converter.DataConverter`
configuration from TOML files and environment variables. A file holds named
profiles:

.. code-block:: toml

    [profile.default]
    compression = "zlib"

    [profile.trusted]
    enable_pickle = true
    pickle_protocol = 5
    allowed_modules = ["myapp", "datetime"]

Environment variables override the values of the selected profile.
"""

from __future__ import annotations

import functools
import os
import pickle
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, Union, cast

from typing_extensions import Self, TypeAlias, TypedDict

import serialproxy._log_utils
import serialproxy.converter
import serialproxy.proxy

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

DataSource: TypeAlias = Union[
    Path, str, bytes
]  # str represents a file contents, bytes represents raw data

Compression: TypeAlias = Literal["none", "zlib"]

DEFAULT_PROFILE = "default"

ENV_CONFIG_FILE = "SERIALPROXY_CONFIG_FILE"
ENV_PROFILE = "SERIALPROXY_PROFILE"
ENV_ENABLE_PICKLE = "SERIALPROXY_ENABLE_PICKLE"
ENV_PICKLE_PROTOCOL = "SERIALPROXY_PICKLE_PROTOCOL"
ENV_ALLOWED_MODULES = "SERIALPROXY_ALLOWED_MODULES"
ENV_COMPRESSION = "SERIALPROXY_COMPRESSION"
ENV_COMPRESSION_LEVEL = "SERIALPROXY_COMPRESSION_LEVEL"
ENV_LOG_EXTRA_MODE = "SERIALPROXY_LOG_EXTRA_MODE"

_COMPRESSIONS: tuple[Compression, ...] = ("none", "zlib")


# Typed dictionary of what a profile looks like as TOML
class ConverterConfigProfileDict(TypedDict, total=False):
    """Dictionary representation of a converter config profile for TOML."""

    enable_pickle: bool
    pickle_protocol: int
    allowed_modules: Sequence[str]
    compression: str
    compression_level: int
    log_extra_mode: str


_PROFILE_KEYS = frozenset(ConverterConfigProfileDict.__annotations__)


def _read_source(source: Optional[DataSource]) -> Optional[bytes]:
    if source is None:
        return None
    if isinstance(source, Path):
        with open(source, "rb") as f:
            return f.read()
    if isinstance(source, str):
        return source.encode("utf-8")
    if isinstance(source, bytes):
        return source
    raise TypeError(
        f"Source must be one of pathlib.Path, str, or bytes, but got {type(source).__name__}"
    )


def default_config_file(env_vars: Optional[Mapping[str, str]] = None) -> Path:
    """Location of the config file when no source is given.

    This is ``SERIALPROXY_CONFIG_FILE`` if set, otherwise
    ``serialproxy/serialproxy.toml`` under ``XDG_CONFIG_HOME`` (``~/.config``
    when unset).
    """
    env = os.environ if env_vars is None else env_vars
    if env.get(ENV_CONFIG_FILE):
        return Path(env[ENV_CONFIG_FILE])
    config_home = env.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(config_home) / "serialproxy" / "serialproxy.toml"


def _load_profiles(
    config_source: Optional[DataSource],
    *,
    disable_file: bool,
    env_vars: Mapping[str, str],
) -> Mapping[str, Any]:
    if config_source is None:
        if disable_file:
            return {}
        path = default_config_file(env_vars)
        # Only an explicitly configured file must exist
        if not path.exists() and not env_vars.get(ENV_CONFIG_FILE):
            return {}
        config_source = path
    data = _read_source(config_source)
    if not data:
        return {}
    try:
        doc = tomllib.loads(data.decode("utf-8"))
    except tomllib.TOMLDecodeError as err:
        raise ValueError(f"Invalid TOML configuration: {err}") from err
    profiles = doc.get("profile", {})
    if not isinstance(profiles, Mapping):
        raise ValueError("Expected [profile.<name>] tables")
    return profiles


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as err:
        raise ValueError(f"{name} must be an integer, got {value!r}") from err


def _env_overrides(env_vars: Mapping[str, str]) -> ConverterConfigProfileDict:
    d: ConverterConfigProfileDict = {}
    if ENV_ENABLE_PICKLE in env_vars:
        d["enable_pickle"] = _parse_bool(ENV_ENABLE_PICKLE, env_vars[ENV_ENABLE_PICKLE])
    if ENV_PICKLE_PROTOCOL in env_vars:
        d["pickle_protocol"] = _parse_int(
            ENV_PICKLE_PROTOCOL, env_vars[ENV_PICKLE_PROTOCOL]
        )
    if ENV_ALLOWED_MODULES in env_vars:
        d["allowed_modules"] = [
            m.strip() for m in env_vars[ENV_ALLOWED_MODULES].split(",") if m.strip()
        ]
    if ENV_COMPRESSION in env_vars:
        d["compression"] = env_vars[ENV_COMPRESSION].strip().lower()
    if ENV_COMPRESSION_LEVEL in env_vars:
        d["compression_level"] = _parse_int(
            ENV_COMPRESSION_LEVEL, env_vars[ENV_COMPRESSION_LEVEL]
        )
    if ENV_LOG_EXTRA_MODE in env_vars:
        d["log_extra_mode"] = env_vars[ENV_LOG_EXTRA_MODE].strip().lower()
    return d


@dataclass(frozen=True)
class ConverterConfigProfile:
    """Represents a converter configuration profile.

    This class holds the configuration as loaded from a file or environment.
    See :py:meth:`to_data_converter` to build a data converter from it.
    """

    enable_pickle: bool = False
    """If True, values are pickled instead of JSON encoded."""
    pickle_protocol: Optional[int] = None
    """Pickle protocol to write with. Default protocol if None."""
    allowed_modules: Optional[Sequence[str]] = None
    """Modules pickled globals may be loaded from. Any if None."""
    compression: Compression = "none"
    """Payload compression."""
    compression_level: int = -1
    """zlib compression level, -1 for the library default."""
    log_extra_mode: serialproxy._log_utils.LogExtraMode = "dict"
    """How guarded type details are added to log records."""

    def __post_init__(self) -> None:  # noqa: D105
        if not isinstance(self.enable_pickle, bool):
            raise ValueError(
                f"enable_pickle must be a boolean, got {self.enable_pickle!r}"
            )
        if self.pickle_protocol is not None and (
            isinstance(self.pickle_protocol, bool)
            or not isinstance(self.pickle_protocol, int)
            or not 0 <= self.pickle_protocol <= pickle.HIGHEST_PROTOCOL
        ):
            raise ValueError(
                f"pickle_protocol must be between 0 and {pickle.HIGHEST_PROTOCOL}, "
                f"got {self.pickle_protocol!r}"
            )
        if self.allowed_modules is not None and (
            isinstance(self.allowed_modules, str)
            or not all(isinstance(m, str) for m in self.allowed_modules)
        ):
            raise ValueError("allowed_modules must be a list of module names")
        if self.compression not in _COMPRESSIONS:
            raise ValueError(
                f"compression must be one of {', '.join(_COMPRESSIONS)}, got {self.compression!r}"
            )
        if (
            isinstance(self.compression_level, bool)
            or not isinstance(self.compression_level, int)
            or not -1 <= self.compression_level <= 9
        ):
            raise ValueError(
                f"compression_level must be between -1 and 9, got {self.compression_level!r}"
            )
        if self.log_extra_mode not in serialproxy._log_utils.LOG_EXTRA_MODES:
            raise ValueError(
                f"log_extra_mode must be one of {', '.join(serialproxy._log_utils.LOG_EXTRA_MODES)}, "
                f"got {self.log_extra_mode!r}"
            )

    @classmethod
    def from_dict(
        cls, d: ConverterConfigProfileDict, *, strict: bool = False
    ) -> Self:
        """Create a ConverterConfigProfile from a dictionary.

        Args:
            d: Profile dictionary as read from TOML.
            strict: If true, unrecognized keys raise ``ValueError``.
        """
        if strict:
            unknown = sorted(set(d) - _PROFILE_KEYS)
            if unknown:
                raise ValueError(f"Unrecognized profile keys: {', '.join(unknown)}")
        allowed_modules = d.get("allowed_modules")
        return cls(
            enable_pickle=d.get("enable_pickle", False),
            pickle_protocol=d.get("pickle_protocol"),
            allowed_modules=(
                tuple(allowed_modules) if allowed_modules is not None else None
            ),
            compression=cast(Compression, d.get("compression", "none")),
            compression_level=d.get("compression_level", -1),
            log_extra_mode=cast(
                serialproxy._log_utils.LogExtraMode, d.get("log_extra_mode", "dict")
            ),
        )

    def to_dict(self) -> ConverterConfigProfileDict:
        """Convert to a dictionary that can be used for TOML serialization.

        Only values that differ from the defaults are included.
        """
        d: ConverterConfigProfileDict = {}
        if self.enable_pickle:
            d["enable_pickle"] = True
        if self.pickle_protocol is not None:
            d["pickle_protocol"] = self.pickle_protocol
        if self.allowed_modules is not None:
            d["allowed_modules"] = list(self.allowed_modules)
        if self.compression != "none":
            d["compression"] = self.compression
        if self.compression_level != -1:
            d["compression_level"] = self.compression_level
        if self.log_extra_mode != "dict":
            d["log_extra_mode"] = self.log_extra_mode
        return d

    def to_data_converter(self) -> serialproxy.converter.DataConverter:
        """Create a :py:class:`serialproxy.converter.DataConverter` from this
        profile.
        """
        payload_codec: Optional[serialproxy.converter.PayloadCodec] = None
        if self.compression == "zlib":
            payload_codec = serialproxy.converter.ZlibPayloadCodec(
                self.compression_level
            )
        if not self.enable_pickle:
            return serialproxy.converter.DataConverter(payload_codec=payload_codec)
        return serialproxy.converter.DataConverter(
            payload_converter_class=functools.partial(
                serialproxy.converter.PicklingPayloadConverter,
                protocol=self.pickle_protocol,
                allowed_modules=self.allowed_modules,
            ),
            payload_codec=payload_codec,
        )

    def configure_logger(
        self, adapter: Optional[serialproxy.proxy.LoggerAdapter] = None
    ) -> None:
        """Apply the logging settings of this profile.

        Args:
            adapter: Adapter to configure. Defaults to
                :py:data:`serialproxy.proxy.logger`.
        """
        (adapter or serialproxy.proxy.logger).log_extra_mode = self.log_extra_mode

    @staticmethod
    def load(
        profile: Optional[str] = None,
        *,
        config_source: Optional[DataSource] = None,
        disable_file: bool = False,
        disable_env: bool = False,
        config_file_strict: bool = False,
        override_env_vars: Optional[Mapping[str, str]] = None,
    ) -> ConverterConfigProfile:
        """Load a single profile from given sources, applying env overrides.

        Args:
            profile: Profile to load from the config. Defaults to
                ``SERIALPROXY_PROFILE`` or ``"default"``.
            config_source: If present, this is used as the configuration source
                instead of default file locations. This can be a path to the file
                or the string/byte contents of the file.
            disable_file: If true, file loading is disabled. This is only used
                when ``config_source`` is not present.
            disable_env: If true, environment variable loading and overriding
                is disabled. This takes precedence over the ``override_env_vars``
                parameter.
            config_file_strict: If true, will error on unrecognized keys.
            override_env_vars: The environment to use for loading and overrides.
                If not provided, the current process's environment is used.

        Returns:
            The converter configuration profile.

        Raises:
            ValueError: The configuration is invalid, or an explicitly
                requested profile does not exist.
        """
        env_vars: Mapping[str, str] = (
            {}
            if disable_env
            else (os.environ if override_env_vars is None else override_env_vars)
        )
        explicit = profile is not None or ENV_PROFILE in env_vars
        name = profile or env_vars.get(ENV_PROFILE) or DEFAULT_PROFILE
        profiles = _load_profiles(
            config_source, disable_file=disable_file, env_vars=env_vars
        )
        raw = profiles.get(name)
        if raw is None and explicit and name != DEFAULT_PROFILE:
            raise ValueError(f"Profile {name!r} not found in configuration")
        if raw is not None and not isinstance(raw, Mapping):
            raise ValueError(f"Profile {name!r} must be a table")
        merged = {**(raw or {}), **_env_overrides(env_vars)}
        return ConverterConfigProfile.from_dict(
            cast(ConverterConfigProfileDict, merged), strict=config_file_strict
        )


@dataclass
class ConverterConfig:
    """Converter configuration loaded from TOML.

    This contains a mapping of profile names to profiles. See
    :py:meth:`ConverterConfigProfile.load` to load an individual profile with
    environment overrides applied.
    """

    profiles: Mapping[str, ConverterConfigProfile] = field(default_factory=dict)
    """Map of profile name to its corresponding ConverterConfigProfile."""

    def to_dict(self) -> Mapping[str, ConverterConfigProfileDict]:
        """Convert to a dictionary that can be used for TOML serialization."""
        return {k: v.to_dict() for k, v in self.profiles.items()}

    @classmethod
    def from_dict(
        cls,
        d: Mapping[str, Mapping[str, Any]],
        *,
        strict: bool = False,
    ) -> Self:
        """Create a ConverterConfig from a dictionary."""
        return cls(
            profiles={
                k: ConverterConfigProfile.from_dict(
                    cast(ConverterConfigProfileDict, v), strict=strict
                )
                for k, v in d.items()
            }
        )

    @staticmethod
    def load(
        *,
        config_source: Optional[DataSource] = None,
        config_file_strict: bool = False,
        override_env_vars: Optional[Mapping[str, str]] = None,
    ) -> ConverterConfig:
        """Load all profiles from given sources.

        This does not apply environment variable overrides to the profiles, it
        only uses an environment variable to find the default config file path
        (``SERIALPROXY_CONFIG_FILE``).

        Args:
            config_source: If present, this is used as the configuration source
                instead of default file locations.
            config_file_strict: If true, TOML parsing will error on
                unrecognized keys.
            override_env_vars: The environment variables to use for locating the
                default config file. If not provided, the current process's
                environment is used.
        """
        env_vars = os.environ if override_env_vars is None else override_env_vars
        profiles = _load_profiles(config_source, disable_file=False, env_vars=env_vars)
        return ConverterConfig.from_dict(profiles, strict=config_file_strict)

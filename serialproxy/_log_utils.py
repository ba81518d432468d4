"""Internal utilities for serialproxy logging.

This module is internal and may change at any time.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, MutableMapping
from typing import Any, Literal

LogExtraMode = Literal["dict", "flatten", "json"]
"""Mode controlling how proxy context is added to log record extra.

Values:
    dict: (default) Add context as a nested dictionary under a single key.
        Suitable for logging handlers that support nested structures.
    flatten: Add each context field as a separate top-level key with a
        namespaced prefix. Values that are not primitives (str/int/float/bool)
        are converted to strings. Recommended for pipelines that require flat,
        scalar attributes.
    json: Add context as a JSON string under a single key.
"""

LOG_EXTRA_MODES: tuple[LogExtraMode, ...] = ("dict", "flatten", "json")


def _apply_proxy_context_to_extra(
    extra: MutableMapping[str, Any],
    *,
    key: str,
    prefix: str,
    ctx: Mapping[str, Any],
    mode: LogExtraMode,
) -> None:
    """Apply proxy context to log record extra based on the configured mode.

    Args:
        extra: The mutable extra dict to update.
        key: The key to use for dict/json modes (e.g., "serialproxy").
        prefix: The prefix to use for flatten mode keys (e.g., "serialproxy").
        ctx: The context mapping containing proxy fields.
        mode: The mode controlling how context is added.
    """
    if mode == "dict":
        extra[key] = dict(ctx)
    elif mode == "json":
        extra[key] = json.dumps(ctx, separators=(",", ":"), default=str)
    elif mode == "flatten":
        for k, v in ctx.items():
            if not isinstance(v, (str, int, float, bool, type(None))):
                v = str(v)
            extra[f"{prefix}.{k}"] = v
    else:
        # Unknown modes fall back to dict
        extra[key] = dict(ctx)

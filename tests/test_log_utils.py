"""Tests for serialproxy logging utilities and LoggerAdapter modes."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import pytest

from serialproxy._log_utils import _apply_proxy_context_to_extra
from serialproxy.proxy import LoggerAdapter


@pytest.fixture
def sample_context() -> dict[str, Any]:
    return {
        "holder_type": "serialproxy.values.NonNegativeValue",
        "proxy_type": "serialproxy.values.NonNegativeValueProxy",
    }


class TestApplyProxyContextToExtra:
    """Tests for _apply_proxy_context_to_extra helper."""

    def test_dict_mode_adds_nested_dict(self, sample_context: dict[str, Any]) -> None:
        extra: dict[str, Any] = {}
        _apply_proxy_context_to_extra(
            extra, key="serialproxy", prefix="sp", ctx=sample_context, mode="dict"
        )

        assert extra == {"serialproxy": sample_context}
        # Verify it's a copy, not the same object
        assert extra["serialproxy"] is not sample_context

    def test_flatten_mode_adds_prefixed_keys(
        self, sample_context: dict[str, Any]
    ) -> None:
        extra: dict[str, Any] = {}
        _apply_proxy_context_to_extra(
            extra, key="serialproxy", prefix="sp", ctx=sample_context, mode="flatten"
        )

        assert "serialproxy" not in extra
        assert extra["sp.holder_type"] == "serialproxy.values.NonNegativeValue"
        assert extra["sp.proxy_type"] == "serialproxy.values.NonNegativeValueProxy"

    def test_flatten_mode_converts_non_primitives_to_string(self) -> None:
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ctx = {
            "string_val": "hello",
            "int_val": 42,
            "float_val": 1.5,
            "bool_val": True,
            "none_val": None,
            "list_val": [1, 2],
            "time_val": when,
        }
        extra: dict[str, Any] = {}
        _apply_proxy_context_to_extra(
            extra, key="serialproxy", prefix="sp", ctx=ctx, mode="flatten"
        )

        assert extra["sp.string_val"] == "hello"
        assert extra["sp.int_val"] == 42
        assert extra["sp.float_val"] == 1.5
        assert extra["sp.bool_val"] is True
        assert extra["sp.none_val"] is None
        assert extra["sp.list_val"] == "[1, 2]"
        assert extra["sp.time_val"] == str(when)

    def test_json_mode_adds_string(self, sample_context: dict[str, Any]) -> None:
        extra: dict[str, Any] = {"other": 1}
        _apply_proxy_context_to_extra(
            extra, key="serialproxy", prefix="sp", ctx=sample_context, mode="json"
        )

        assert isinstance(extra["serialproxy"], str)
        assert json.loads(extra["serialproxy"]) == sample_context
        assert extra["other"] == 1

    def test_unknown_mode_falls_back_to_dict(
        self, sample_context: dict[str, Any]
    ) -> None:
        extra: dict[str, Any] = {}
        _apply_proxy_context_to_extra(
            extra,
            key="serialproxy",
            prefix="sp",
            ctx=sample_context,
            mode="unknown",  # type: ignore
        )

        assert extra["serialproxy"] == sample_context


class TestLoggerAdapter:
    """Tests for LoggerAdapter placing proxy details."""

    @pytest.fixture
    def adapter(self) -> LoggerAdapter:
        return LoggerAdapter(logging.getLogger("serialproxy.test_log_utils"), None)

    def test_details_on_message_and_extra(
        self,
        adapter: LoggerAdapter,
        caplog: pytest.LogCaptureFixture,
        sample_context: dict[str, Any],
    ) -> None:
        with caplog.at_level(logging.INFO, logger=adapter.base_logger.name):
            adapter.info("Hello %s", "there", proxy_details=sample_context)

        (record,) = caplog.records
        assert record.getMessage() == f"Hello there ({sample_context})"
        assert getattr(record, "serialproxy") == sample_context

    def test_no_details(
        self, adapter: LoggerAdapter, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger=adapter.base_logger.name):
            adapter.info("Plain")

        (record,) = caplog.records
        assert record.getMessage() == "Plain"
        assert not hasattr(record, "serialproxy")

    def test_disabled_placements(
        self,
        adapter: LoggerAdapter,
        caplog: pytest.LogCaptureFixture,
        sample_context: dict[str, Any],
    ) -> None:
        adapter.proxy_info_on_message = False
        adapter.proxy_info_on_extra = False
        with caplog.at_level(logging.INFO, logger=adapter.base_logger.name):
            adapter.info("Quiet", proxy_details=sample_context)

        (record,) = caplog.records
        assert record.getMessage() == "Quiet"
        assert not hasattr(record, "serialproxy")

    def test_call_extra_takes_precedence(
        self,
        adapter: LoggerAdapter,
        caplog: pytest.LogCaptureFixture,
        sample_context: dict[str, Any],
    ) -> None:
        adapter.log_extra_mode = "json"
        with caplog.at_level(logging.INFO, logger=adapter.base_logger.name):
            adapter.info(
                "Mine",
                proxy_details=sample_context,
                extra={"serialproxy": "override", "other": 2},
            )

        (record,) = caplog.records
        assert getattr(record, "serialproxy") == "override"
        assert getattr(record, "other") == 2

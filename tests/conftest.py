import logging
import os
from collections.abc import Iterator

import pytest

import serialproxy.proxy


def pytest_configure(config: pytest.Config) -> None:
    # Surface substitution and resolution logs when running with log_cli
    logging.getLogger("serialproxy").setLevel(logging.DEBUG)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Never let the developer's environment leak into config tests
    for key in list(os.environ):
        if key.startswith("SERIALPROXY_") or key == "XDG_CONFIG_HOME":
            monkeypatch.delenv(key)


@pytest.fixture
def proxy_logger() -> Iterator[serialproxy.proxy.LoggerAdapter]:
    logger = serialproxy.proxy.logger
    orig = (
        logger.proxy_info_on_message,
        logger.proxy_info_on_extra,
        logger.log_extra_mode,
    )
    yield logger
    (
        logger.proxy_info_on_message,
        logger.proxy_info_on_extra,
        logger.log_extra_mode,
    ) = orig

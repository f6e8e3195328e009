"""Tests for patchembed.utils.logging module."""

from __future__ import annotations

import json
import logging

import pytest

from patchembed.utils.logging import (
    clear_correlation_context,
    configure_logging,
    get_logger,
    set_correlation_context,
)


def _read_last_json_log_line(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    captured = capsys.readouterr()
    lines = [line for line in captured.out.splitlines() if line.strip()]
    assert lines, "Expected at least one log line on stdout"
    return json.loads(lines[-1])


def test_configure_logging_sets_root_level() -> None:
    configure_logging(level="WARNING", log_format="console")
    assert logging.getLogger().level == logging.WARNING


def test_configure_logging_default_settings_do_not_error() -> None:
    configure_logging()


def test_get_logger_returns_logger_proxy() -> None:
    configure_logging(level="DEBUG", log_format="console")
    logger = get_logger("test.module")
    assert hasattr(logger, "info")
    assert hasattr(logger, "warning")


def test_json_log_is_valid_and_contains_correlation_ids(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(level="INFO", log_format="json")
    expected_index = 3
    set_correlation_context(
        image_id="slide-1", model_id="CTransPath", region_index=expected_index
    )

    logger = get_logger("test.json")
    logger.info("hello", foo="bar")
    payload = _read_last_json_log_line(capsys)

    assert payload["event"] == "hello"
    assert payload["foo"] == "bar"
    assert payload["image_id"] == "slide-1"
    assert payload["model_id"] == "CTransPath"
    assert payload["region_index"] == expected_index
    assert payload["level"] == "info"
    assert payload["logger"] == "test.json"
    assert "timestamp" in payload


def test_json_log_omits_correlation_ids_when_unset(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(level="INFO", log_format="json")
    clear_correlation_context()

    logger = get_logger("test.json")
    logger.info("hello")
    payload = _read_last_json_log_line(capsys)

    assert payload["event"] == "hello"
    assert "image_id" not in payload
    assert "model_id" not in payload
    assert "region_index" not in payload


def test_region_index_zero_is_kept(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(level="INFO", log_format="json")
    set_correlation_context(region_index=0)

    get_logger("test.json").info("first region")
    payload = _read_last_json_log_line(capsys)

    assert payload["region_index"] == 0

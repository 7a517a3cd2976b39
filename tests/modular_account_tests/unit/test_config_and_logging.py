"""
Tests for account configuration, error context extraction and JSON logging.
"""

import json
import logging

import pytest

from modular_account.core.config import DEFAULT_ENTRY_POINT, AccountConfig
from modular_account.core.exceptions import (
    AccountError,
    ConfigurationError,
    ExecutionFailed,
    RevertError,
    get_error_context,
)
from modular_account.core.logging_config import CustomJsonFormatter, get_logger, setup_logging


class TestAccountConfig:

    def test_defaults_are_conservative(self, monkeypatch):
        for name in (
            "MODACCT_ALLOW_DELEGATE_CALLS",
            "MODACCT_ALLOW_FORCED_REMOVAL",
            "MODACCT_ALLOW_REMOVING_LAST_VALIDATOR",
            "MODACCT_ENTRY_POINT",
        ):
            monkeypatch.delenv(name, raising=False)

        config = AccountConfig.from_env()

        assert config.entry_point_address == DEFAULT_ENTRY_POINT
        assert not config.allow_delegate_calls
        assert not config.allow_forced_removal
        assert config.allow_self_config
        assert config.allow_removing_last_validator

    def test_from_env_reads_current_environment(self, monkeypatch):
        monkeypatch.setenv("MODACCT_ENTRY_POINT", "0x" + "AB" * 20)
        monkeypatch.setenv("MODACCT_CHAIN_ID", "0x10")
        monkeypatch.setenv("MODACCT_ALLOW_DELEGATE_CALLS", "yes")

        config = AccountConfig.from_env()

        assert config.entry_point_address == "0x" + "ab" * 20
        assert config.chain_id == 16
        assert config.allow_delegate_calls

    def test_risky_flags_are_logged(self, monkeypatch, caplog):
        monkeypatch.delenv("MODACCT_ALLOW_DELEGATE_CALLS", raising=False)
        monkeypatch.setenv("MODACCT_ALLOW_FORCED_REMOVAL", "1")

        with caplog.at_level(logging.WARNING, logger="modular_account.core.config"):
            AccountConfig.from_env()

        assert [r.event for r in caplog.records] == ["config.forced_removal_enabled"]

    @pytest.mark.parametrize(
        "name,value",
        [("MODACCT_ALLOW_SELF_CONFIG", "maybe"), ("MODACCT_CHAIN_ID", "one")],
    )
    def test_malformed_environment_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError) as exc_info:
            AccountConfig.from_env()

        assert exc_info.value.details["env_var"] == name

    @pytest.mark.parametrize(
        "changes",
        [{"entry_point_address": "0x1234"}, {"chain_id": 0}, {"log_level": "LOUD"}],
    )
    def test_invalid_values_rejected(self, changes):
        with pytest.raises(ConfigurationError):
            AccountConfig(**changes)

    def test_with_overrides_returns_new_config(self):
        config = AccountConfig()

        changed = config.with_overrides(allow_delegate_calls=True)

        assert changed.allow_delegate_calls and not config.allow_delegate_calls


class TestErrorContext:

    def test_plain_exception(self):
        assert get_error_context(ValueError("bad")) == {"error_type": "ValueError", "error_message": "bad"}

    def test_account_error_details(self):
        context = get_error_context(AccountError("denied", details={"caller": "x"}))

        assert context["details"] == {"caller": "x"}
        assert context["recoverable"] is False

    def test_revert_reason_and_cause(self):
        try:
            try:
                raise KeyError("slot")
            except KeyError as e:
                raise RevertError("reverted", reason="KeyError") from e
        except RevertError as e:
            context = get_error_context(e)

        assert context["revert_reason"] == "KeyError"
        assert context["cause"].startswith("KeyError")

    def test_failed_index(self):
        assert get_error_context(ExecutionFailed("call 2 failed", index=2))["failed_index"] == 2


class TestJsonLogging:

    def test_formatter_adds_service_fields(self):
        formatter = CustomJsonFormatter(environment="test", service_name="modular_account")
        record = logging.LogRecord("modular_account.x", logging.INFO, __file__, 10, "installed", None, None)
        record.event = "account.module_installed"

        payload = json.loads(formatter.format(record))

        assert payload["message"] == "installed"
        assert payload["event"] == "account.module_installed"
        assert payload["environment"] == "test"
        assert payload["service"] == "modular_account"
        assert payload["level"] == "info"
        assert payload["source"]["line"] == 10

    def test_setup_writes_json_file(self, tmp_path):
        log_file = tmp_path / "logs" / "account.json"
        logger = setup_logging(name="modular_account.test_file", log_file=str(log_file), level="DEBUG", enable_console=False)

        logger.debug("hello", extra={"event": "test.hello"})
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().splitlines()[0])
        assert line["event"] == "test.hello"
        assert line["service"] == "modular_account"

    def test_setup_replaces_handlers(self):
        name = "modular_account.test_handlers"
        setup_logging(name=name, level="INFO")
        logger = setup_logging(name=name, level="WARNING")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_get_logger_keeps_existing_configuration(self):
        name = "modular_account.test_get_logger"
        configured = setup_logging(name=name, level="ERROR")

        assert get_logger(name, level="DEBUG") is configured
        assert configured.level == logging.ERROR

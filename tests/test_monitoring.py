"""
Tests for structured logging.
"""
import json
import logging

import pytest
import structlog

from bullion_settlement.monitoring import get_logger, log_context, setup_logging
from bullion_settlement.monitoring.logging import mask_value


class TestLogging:
    """Test suite for logging configuration."""

    @pytest.mark.unit
    def test_setup_logging_emits_json_with_app_context(self, test_settings, capsys) -> None:
        root_level = logging.getLogger().level
        try:
            setup_logging(test_settings)
            with log_context(external_order_id="BULLION_acct-1_abc", request_id=None):
                get_logger("tests").info(
                    "ledger_checked", account_id="acct-1", pan_card_number="ABCDE1234F"
                )
            get_logger("tests").info("ledger_checked_again")

            wrapped = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
            records = {
                json.loads(w["message"])["event"]: w
                for w in wrapped
                if w["message"].startswith("{")
            }
            record = json.loads(records["ledger_checked"]["message"])
            assert records["ledger_checked"]["logger"] == "tests"
            assert records["ledger_checked"]["level"] == "INFO"
            assert record["account_id"] == "acct-1"
            assert record["app_name"] == "bullion-settlement-test"
            assert record["external_order_id"] == "BULLION_acct-1_abc"
            assert "request_id" not in record
            assert record["pan_card_number"] == "******234F"
            later = json.loads(records["ledger_checked_again"]["message"])
            assert "external_order_id" not in later
        finally:
            structlog.reset_defaults()
            logging.getLogger().handlers.clear()
            logging.getLogger().setLevel(root_level)

    @pytest.mark.unit
    def test_mask_value(self) -> None:
        assert mask_value("123412341234") == "********1234"
        assert mask_value("abc") == "****"

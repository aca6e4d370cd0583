"""
Unit tests for logging configuration.
"""

import json
import logging

import pytest
import structlog

import stockledger.logging as ledger_logging
from stockledger.errors import AlreadyAppliedError
from stockledger.logging import configure_logging, get_logger
from stockledger.services import document_service, inventory_service


class TestLoggingConfiguration:
    """Test structured logging setup"""

    def test_json_output_structure(self, capsys):
        configure_logging("test-service", "INFO")
        logger = get_logger("test_module")

        logger.info("test_event", receipt_id=12)

        log_dict = json.loads(capsys.readouterr().out.strip())
        assert log_dict["service"] == "test-service"
        assert log_dict["event"] == "test_event"
        assert log_dict["receipt_id"] == 12
        assert log_dict["level"] == "info"
        assert "timestamp" in log_dict

    def test_configure_logging_idempotent(self, capsys):
        configure_logging("first-service", "INFO")
        configure_logging("second-service", "WARNING")

        assert logging.getLogger().level == logging.WARNING
        get_logger("test").warning("after_second_call")
        log_dict = json.loads(capsys.readouterr().out.strip())
        assert log_dict["service"] == "first-service"

    def test_debug_filtered_by_level(self, capsys):
        configure_logging("test-service", "INFO")
        logger = get_logger(__name__)

        logger.debug("debug_message")
        logger.info("info_message")

        lines = [line for line in capsys.readouterr().out.strip().split("\n") if line]
        assert len(lines) == 1
        assert json.loads(lines[0])["event"] == "info_message"

    def test_error_logging_includes_exc_info(self, capsys):
        configure_logging("test-service", "ERROR")
        logger = get_logger("test_module")

        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("error_occurred", exc_info=True)

        log_dict = json.loads(capsys.readouterr().out.strip())
        assert "exception" in log_dict


def test_business_rejection_is_logged_as_warning(db_session, product_a, actor_id, capsys):
    configure_logging("stockledger", "INFO")
    receipt = document_service.create_import_receipt(
        db_session, actor_id=actor_id, lines=[{"product_id": product_a.id, "quantity": 1}],
    )
    inventory_service.apply_import_receipt(db_session, receipt.id, actor_id)
    capsys.readouterr()

    with pytest.raises(AlreadyAppliedError):
        inventory_service.apply_import_receipt(db_session, receipt.id, actor_id)

    events = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    rejection = next(e for e in events if e["event"] == "already_applied")
    assert rejection["level"] == "warning"
    assert rejection["command"] == "import_receipt_applied"
    assert rejection["receipt_id"] == receipt.id


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration between tests"""
    ledger_logging._configured = False
    logging.root.handlers = []
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()

    yield

    ledger_logging._configured = False
    structlog.reset_defaults()
    logging.root.handlers = []
    structlog.contextvars.clear_contextvars()

"""
Tests for the logging setup and secret masking.
"""

import json
import logging

import pytest

from dbmigrator.utils.helpers import MASK, mask_connection_string
from dbmigrator.utils.logging import (
    ROOT_LOGGER_NAME,
    SecretMaskingFilter,
    StructuredFormatter,
    setup_logging,
)


def make_record(msg, args=(), **extra):
    record = logging.LogRecord("dbmigrator.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestMasking:

    @pytest.mark.parametrize("value,expected", [
        ("Server=db;User Id=sa;Password=hunter2;", f"Server=db;User Id=sa;Password={MASK};"),
        ("Host=pg;PWD = s3cret", f"Host=pg;PWD = {MASK}"),
        ("postgresql://svc:p%40ss@db:5432/app", f"postgresql://svc:{MASK}@db:5432/app"),
        ("Data Source=app.db", "Data Source=app.db"),
        ("", ""),
    ])
    def test_mask_connection_string(self, value, expected):
        assert mask_connection_string(value) == expected

    def test_masking_is_idempotent(self):
        once = mask_connection_string("Server=db;Password=x")
        assert mask_connection_string(once) == once


class TestSecretMaskingFilter:
    """Test cases for SecretMaskingFilter."""

    def test_masks_message_args_and_extras(self):
        record = make_record(
            "Connecting with %s", ("Server=db;Password=pw",), connection="Host=pg;Password=pw"
        )

        assert SecretMaskingFilter().filter(record) is True

        assert record.getMessage() == f"Connecting with Server=db;Password={MASK}"
        assert record.connection == f"Host=pg;Password={MASK}"

    def test_mapping_args(self):
        record = make_record("%(conn)s", ({"conn": "Server=db;Pwd=pw"},))
        SecretMaskingFilter().filter(record)
        assert record.getMessage() == f"Server=db;Pwd={MASK}"


class TestStructuredFormatter:
    """Test cases for StructuredFormatter."""

    def test_json_output(self):
        record = make_record("Applied %d migration(s)", (2,), operation="migrate", tenant_id="Acme", batch="7")

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "Applied 2 migration(s)"
        assert data["level"] == "INFO"
        assert data["logger"] == "dbmigrator.test"
        assert data["operation"] == "migrate"
        assert data["tenant_id"] == "Acme"
        assert data["metadata"]["batch"] == "7"
        assert data["metadata"]["line"] == 10


class TestSetupLogging:
    """Test cases for setup_logging."""

    def test_file_handler_masks_secrets(self, tmp_path):
        log_file = tmp_path / "logs" / "dbmigrator.log"
        logger = setup_logging("DEBUG", log_file=str(log_file), rich_console=False)

        logging.getLogger("dbmigrator.orchestrator").info("Using Server=db;Password=hunter2")
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text()
        assert "hunter2" not in content
        assert MASK in content
        assert logger.level == logging.DEBUG

    def test_structured_file_output(self, tmp_path):
        log_file = tmp_path / "dbmigrator.log"
        logger = setup_logging(log_file=str(log_file), structured_logging=True, log_rotation=False)

        logger.warning("plain message")
        for handler in logger.handlers:
            handler.flush()

        assert json.loads(log_file.read_text().splitlines()[0])["level"] == "WARNING"

    def test_repeated_setup_replaces_handlers(self):
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

"""Utility functions for the database migrator."""

from dbmigrator.utils.helpers import (
    MASK,
    calculate_file_checksum,
    load_config_file,
    mask_connection_string,
    safe_filename,
    utc_now,
)
from dbmigrator.utils.logging import (
    SecretMaskingFilter,
    StructuredFormatter,
    setup_logging,
)

__all__ = [
    "MASK",
    "calculate_file_checksum",
    "load_config_file",
    "mask_connection_string",
    "safe_filename",
    "utc_now",
    "SecretMaskingFilter",
    "StructuredFormatter",
    "setup_logging",
]

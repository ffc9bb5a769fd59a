"""
Centralized configuration defaults for XML synchronization operations.

This module defines operational configuration constants used throughout the system.
These are processing infrastructure settings, shared across all tables and jobs.
Environment variables and CLI arguments can override these defaults at runtime.
"""


class ProcessingDefaults:
    """
    Centralized operational configuration for XML import/export.

    All values are defaults; environment variables and CLI arguments override some of them:
    - XML_SYNC_BATCH_SIZE=500 xml_sync import data/server --workers 8
    - xml_sync --log-level DEBUG validate
    """

    # Batch processing
    BATCH_SIZE = 1000  # Rows per insert transaction and per export page

    # Parallelization
    WORKERS = 4  # Background worker threads for batch jobs

    # Overflow self-heal
    MAX_WIDENINGS_PER_FILE = 32  # ALTER COLUMN attempts allowed per imported file

    # Schema inference
    VARCHAR_HEADROOM = 2  # Observed max length is multiplied by this
    MIN_VARCHAR_LENGTH = 16
    MAX_VARCHAR_LENGTH = 4000  # Longer columns become unbounded text
    SAMPLE_LIMIT = 20  # Sample files read when inferring a multi-file table

    # Encoding
    DEFAULT_ENCODING = "UTF-16LE"  # Legacy server files are UTF-16 with BOM
    DEFAULT_HAS_BOM = True
    LARGE_FILE_BYTES = 1024 * 1024

    # Catalog
    METADATA_TABLE = "file_encoding_metadata"

    # Logging
    LOG_LEVEL = "WARNING"  # Default logging level (CRITICAL, ERROR, WARNING, INFO, DEBUG)

"""
Runtime configuration for a CDC source task.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any
import os
import re

from .errors import ConfigurationError
from .operations import Namespace
from .pipeline import validate_pipeline

FULL_DOCUMENT_MODES = {"default", "updateLookup", "whenAvailable", "required"}


class OutputFormat(str, Enum):
    """Record key/value rendering."""
    JSON = "json"
    SIMPLIFIED_JSON = "simplified_json"
    BSON = "bson"
    SCHEMA = "schema"


def _as_format(value: Any, name: str) -> OutputFormat:
    try:
        return OutputFormat(value.lower() if isinstance(value, str) else value)
    except ValueError as e:
        allowed = ", ".join(f.value for f in OutputFormat)
        raise ConfigurationError(f"{name} must be one of: {allowed}") from e


@dataclass
class CDCConfig:
    """Configuration for one CDC source task."""
    job_id: str = "mongocdc"

    # Scope: neither set = whole deployment
    database: Optional[str] = None
    collection: Optional[str] = None

    # Change stream
    pipeline: Optional[List[Dict]] = None
    full_document: Optional[str] = None
    publish_full_document_only: bool = False
    batch_size: int = 0  # server cursor batch size, 0 = server default

    # Copy existing
    copy_existing: bool = False
    copy_existing_max_threads: int = field(default_factory=lambda: os.cpu_count() or 1)
    copy_existing_queue_size: int = 16000
    copy_existing_partitions: int = 1
    copy_existing_namespace_regex: Optional[str] = None
    copy_existing_pipeline: Optional[List[Dict]] = None

    # Output
    output_format_key: OutputFormat = OutputFormat.JSON
    output_format_value: OutputFormat = OutputFormat.JSON
    output_schema_key: Optional[Dict[str, Any]] = None
    output_schema_value: Optional[Dict[str, Any]] = None
    topic_prefix: str = ""

    # Polling
    poll_max_batch_size: int = 1000
    poll_await_time_ms: int = 5000

    # Retry
    max_retries: int = 5
    retry_backoff_base: int = 2  # Exponential backoff: base^attempt seconds
    max_retry_delay: int = 60
    tolerate_resume_failure: bool = False  # accept data loss when history is gone

    def __post_init__(self):
        """Validate configuration values."""
        if self.collection and not self.database:
            raise ConfigurationError("collection requires database")
        if not self.job_id:
            raise ConfigurationError("job_id must not be empty")
        if self.batch_size < 0:
            raise ConfigurationError("batch_size must be non-negative")
        if self.copy_existing_max_threads <= 0:
            raise ConfigurationError("copy_existing_max_threads must be positive")
        if self.copy_existing_queue_size <= 0:
            raise ConfigurationError("copy_existing_queue_size must be positive")
        if self.copy_existing_partitions <= 0:
            raise ConfigurationError("copy_existing_partitions must be positive")
        if self.poll_max_batch_size <= 0:
            raise ConfigurationError("poll_max_batch_size must be positive")
        if self.poll_await_time_ms <= 0:
            raise ConfigurationError("poll_await_time_ms must be positive")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be non-negative")
        if self.retry_backoff_base <= 0:
            raise ConfigurationError("retry_backoff_base must be positive")
        if self.max_retry_delay <= 0:
            raise ConfigurationError("max_retry_delay must be positive")

        if self.full_document is not None and self.full_document not in FULL_DOCUMENT_MODES:
            raise ConfigurationError(f"full_document must be one of: {sorted(FULL_DOCUMENT_MODES)}")
        if self.publish_full_document_only and self.full_document in (None, "default"):
            # updates only carry a document with a lookup
            self.full_document = "updateLookup"

        self.output_format_key = _as_format(self.output_format_key, "output_format_key")
        self.output_format_value = _as_format(self.output_format_value, "output_format_value")
        if self.output_format_key is OutputFormat.SCHEMA and not self.output_schema_key:
            raise ConfigurationError("output_schema_key is required for the schema key format")
        if self.output_format_value is OutputFormat.SCHEMA and not self.output_schema_value:
            raise ConfigurationError("output_schema_value is required for the schema value format")

        if self.copy_existing_namespace_regex:
            try:
                re.compile(self.copy_existing_namespace_regex)
            except re.error as e:
                raise ConfigurationError(f"copy_existing_namespace_regex is invalid: {e}") from e
        if self.copy_existing_pipeline is not None and not isinstance(self.copy_existing_pipeline, list):
            raise ConfigurationError("copy_existing_pipeline must be a list of stages")

        validate_pipeline(self.pipeline)

    @property
    def namespace(self) -> Namespace:
        return Namespace(database=self.database, collection=self.collection)

    @property
    def poll_await_time(self) -> float:
        return self.poll_await_time_ms / 1000.0

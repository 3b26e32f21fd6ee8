"""
Centralized configuration management for mongocdc.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
import json
from typing import Optional, Dict, Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..connectors.cdc.config import CDCConfig, OutputFormat


class DatabaseSettings(BaseSettings):
    """Checkpoint database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Connection URL (preferred) or individual components
    url: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy connection URL. Overrides individual fields if set."
    )

    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    user: str = Field(default="user", description="PostgreSQL username")
    password: str = Field(default="pass", description="PostgreSQL password")
    database: str = Field(default="mongocdc", description="PostgreSQL database name")

    # Connection pool settings
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")

    @property
    def connection_url(self) -> str:
        """Get the database connection URL."""
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class MongoSettings(BaseSettings):
    """Source MongoDB deployment."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    uri: Optional[str] = Field(
        default=None,
        description="Full MongoDB connection string. Overrides host/port/replica_set if set."
    )
    host: str = Field(default="localhost", description="MongoDB host")
    port: int = Field(default=27017, description="MongoDB port")
    replica_set: Optional[str] = Field(
        default="rs0",
        description="Replica set name (change streams need a replica set or sharded cluster)"
    )

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")
    max_pool_size: int = Field(default=100, description="Max connection pool size")

    @property
    def connection_uri(self) -> str:
        if self.uri:
            return self.uri
        uri = f"mongodb://{self.host}:{self.port}/"
        if self.replica_set:
            uri += f"?replicaSet={self.replica_set}"
        return uri

    def client_options(self) -> Dict[str, Any]:
        return {
            "connectTimeoutMS": self.connect_timeout * 1000,
            "serverSelectionTimeoutMS": self.server_selection_timeout * 1000,
            "maxPoolSize": self.max_pool_size,
        }


class CDCSettings(BaseSettings):
    """Source task configuration. Pipelines and schemas are JSON strings."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    job_id: str = Field(default="mongocdc", description="Source task identity (checkpoint key)")
    database: Optional[str] = Field(default=None, description="Database to watch; unset watches the deployment")
    collection: Optional[str] = Field(default=None, description="Collection to watch; requires database")

    pipeline: Optional[str] = Field(default=None, description="JSON array of pipeline stages")
    full_document: Optional[str] = Field(default=None, description="default, updateLookup, whenAvailable, required")
    publish_full_document_only: bool = Field(default=False, description="Emit fullDocument instead of the envelope")
    batch_size: int = Field(default=0, description="Server cursor batch size (0 = server default)")

    copy_existing: bool = Field(default=False, description="Snapshot existing documents before tailing")
    copy_existing_max_threads: Optional[int] = Field(default=None, description="Copy workers (default: CPU count)")
    copy_existing_queue_size: int = Field(default=16000, description="Bounded copy queue depth")
    copy_existing_partitions: int = Field(default=1, description="_id range partitions per collection")
    copy_existing_namespace_regex: Optional[str] = Field(default=None, description="Regex on db.coll to copy")
    copy_existing_pipeline: Optional[str] = Field(default=None, description="JSON array applied to copied documents")

    output_format_key: OutputFormat = Field(default=OutputFormat.JSON, description="Key format")
    output_format_value: OutputFormat = Field(default=OutputFormat.JSON, description="Value format")
    output_schema_key: Optional[str] = Field(default=None, description="Avro record schema for schema keys")
    output_schema_value: Optional[str] = Field(default=None, description="Avro record schema for schema values")
    topic_prefix: str = Field(default="", description="Prefix for record topics")

    poll_max_batch_size: int = Field(default=1000, description="Max records per poll")
    poll_await_time_ms: int = Field(default=5000, description="Max wait per poll in milliseconds")

    max_retries: int = Field(default=5, description="Open retries before giving up")
    retry_backoff_base: int = Field(default=2, description="Exponential backoff base (seconds)")
    max_retry_delay: int = Field(default=60, description="Max seconds between retries")
    tolerate_resume_failure: bool = Field(
        default=False,
        description="Restart from now when the resume position is gone (accepts data loss)"
    )

    @field_validator("pipeline", "copy_existing_pipeline")
    @classmethod
    def validate_pipeline_json(cls, v: Optional[str]) -> Optional[str]:
        """Pipelines must be JSON arrays."""
        if v is None or not v.strip():
            return None
        if not isinstance(json.loads(v), list):
            raise ValueError("pipeline must be a JSON array of stages")
        return v

    @field_validator("output_format_key", "output_format_value", mode="before")
    @classmethod
    def normalize_format(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @staticmethod
    def _json(value: Optional[str]) -> Optional[Any]:
        return json.loads(value) if value else None

    def to_cdc_config(self) -> CDCConfig:
        """Build the validated runtime configuration."""
        options: Dict[str, Any] = dict(
            job_id=self.job_id,
            database=self.database,
            collection=self.collection,
            pipeline=self._json(self.pipeline),
            full_document=self.full_document,
            publish_full_document_only=self.publish_full_document_only,
            batch_size=self.batch_size,
            copy_existing=self.copy_existing,
            copy_existing_queue_size=self.copy_existing_queue_size,
            copy_existing_partitions=self.copy_existing_partitions,
            copy_existing_namespace_regex=self.copy_existing_namespace_regex,
            copy_existing_pipeline=self._json(self.copy_existing_pipeline),
            output_format_key=self.output_format_key,
            output_format_value=self.output_format_value,
            output_schema_key=self._json(self.output_schema_key),
            output_schema_value=self._json(self.output_schema_value),
            topic_prefix=self.topic_prefix,
            poll_max_batch_size=self.poll_max_batch_size,
            poll_await_time_ms=self.poll_await_time_ms,
            max_retries=self.max_retries,
            retry_backoff_base=self.retry_backoff_base,
            max_retry_delay=self.max_retry_delay,
            tolerate_resume_failure=self.tolerate_resume_failure,
        )
        if self.copy_existing_max_threads is not None:
            options["copy_existing_max_threads"] = self.copy_existing_max_threads
        return CDCConfig(**options)


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Root log level")
    json_logs: bool = Field(default=True, description="Emit JSON log lines")

    # Sub-configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    cdc: CDCSettings = Field(default_factory=CDCSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings

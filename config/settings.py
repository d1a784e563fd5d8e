"""
Centralized configuration management for the streamrelay CDC relay.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Optional, Literal
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoSettings(BaseSettings):
    """MongoDB / Cosmos DB connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True
    )

    # COSMOS_CONNECTION_STRING is the secret name used by existing deployments
    connection_string: str = Field(
        default="mongodb://localhost:27017/?replicaSet=rs0",
        validation_alias=AliasChoices("MONGO_CONNECTION_STRING", "COSMOS_CONNECTION_STRING"),
        description="MongoDB connection URI (change streams need a replica set or Cosmos DB)"
    )
    database: str = Field(default="db1", description="Database holding all three collections")

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")
    app_name: str = Field(default="streamrelay", description="appName reported to the server")


class RelaySettings(BaseSettings):
    """Change stream relay configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    source_collection: str = Field(default="inputChangeStream", description="Collection to watch")
    sink_collection: str = Field(default="outputChangeStream", description="Collection documents are forwarded to")
    token_collection: str = Field(default="changeStreamTokens", description="Collection holding resume tokens")

    horizon_days: int = Field(
        default=100,
        description="Look-back window used when no resume token has been saved yet"
    )
    batch_size: int = Field(default=100, description="Max events read from the feed per batch")
    max_await_time_ms: int = Field(default=1000, description="Max time the server waits for new events")

    malformed_event_policy: Literal["skip", "fail"] = Field(
        default="skip",
        description="What to do with an event that has no fullDocument"
    )
    sink_mode: Literal["insert", "upsert"] = Field(
        default="insert",
        description="insert appends every event; upsert replaces by document key"
    )

    @field_validator("horizon_days", "batch_size", "max_await_time_ms")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Reject zero and negative sizes."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v


class MetricsSettings(BaseSettings):
    """Prometheus exposition configuration."""

    model_config = SettingsConfigDict(
        env_prefix="METRICS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(default=False, description="Serve /metrics over HTTP")
    port: int = Field(default=9108, description="Port for the metrics HTTP server")


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(env_file: Optional[str] = None) -> Settings:
    """Reload settings from environment (useful for testing and --env-file)."""
    global _settings
    if env_file:
        _settings = Settings(
            _env_file=env_file,
            mongo=MongoSettings(_env_file=env_file),
            relay=RelaySettings(_env_file=env_file),
            metrics=MetricsSettings(_env_file=env_file),
        )
    else:
        _settings = Settings()
    return _settings

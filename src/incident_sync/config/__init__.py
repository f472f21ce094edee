"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

import json
from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="incident-sync", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/incidents",
        description="Canonical store connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)
    auto_create_tables: bool = Field(
        default=True,
        description="Create missing tables on startup (migrations are preferred in production)"
    )

    # ========== ServiceNow ==========
    servicenow_instance_url: str = Field(
        default="",
        description="ServiceNow instance URL, e.g. https://dev12345.service-now.com"
    )
    servicenow_username: Optional[str] = Field(default=None, description="ServiceNow basic auth user")
    servicenow_password: Optional[str] = Field(default=None, description="ServiceNow basic auth password")
    servicenow_table: str = Field(default="incident", description="Table API table name")
    servicenow_source: str = Field(default="ServiceNow", description="Source label stored on tickets")
    servicenow_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for ServiceNow API calls",
        ge=1,
        le=300
    )
    servicenow_max_retries: int = Field(
        default=3,
        description="Retries for transient ServiceNow read failures",
        ge=0,
        le=10
    )
    servicenow_retry_delay_seconds: float = Field(
        default=1.0,
        description="Base delay for ServiceNow read retries (doubled per attempt)",
        ge=0
    )

    # ========== Incremental Polling ==========
    polling_enabled: bool = Field(default=True, description="Schedule the incremental poller")
    polling_interval_seconds: int = Field(
        default=300,
        description="Seconds between incremental polls",
        ge=10
    )
    polling_batch_size: int = Field(default=100, description="Records per poll page", ge=1, le=10000)
    polling_overlap_seconds: int = Field(
        default=60,
        description="Overlap subtracted from the cursor to absorb clock skew",
        ge=0
    )
    polling_initial_lookback_hours: int = Field(
        default=24,
        description="Lookback used when no poll cursor exists yet",
        ge=1
    )
    polling_max_pages: int = Field(default=50, description="Max pages fetched per poll", ge=1)
    polling_max_consecutive_failures: int = Field(
        default=5,
        description="Consecutive failed polls before the timer is deactivated",
        ge=1
    )
    polling_page_delay_seconds: float = Field(
        default=0.1,
        description="Throttle delay between poll pages",
        ge=0
    )

    # ========== Bulk Import ==========
    enable_bulk_import: bool = Field(
        default=False,
        description="Run the historical bulk import on startup"
    )
    auto_bulk_import_when_empty: bool = Field(
        default=True,
        description="Run the bulk import on startup when the ticket store is empty"
    )
    bulk_import_batch_size: int = Field(default=1000, description="Records per import page", ge=1, le=10000)
    bulk_import_max_records: Optional[int] = Field(
        default=None,
        description="Stop the import after this many records",
        ge=1
    )
    bulk_import_page_delay_seconds: float = Field(
        default=0.1,
        description="Throttle delay between import pages",
        ge=0
    )

    # ========== Embeddings ==========
    embedding_provider: str = Field(default="openai", description="openai, zai or mock")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model name")
    embedding_api_keys: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Embedding API keys in priority order (JSON list or comma separated)"
    )
    embedding_base_url: Optional[str] = Field(
        default=None,
        description="Override base URL for OpenAI-compatible embedding endpoints"
    )
    embedding_dimension: int = Field(default=768, description="Embedding vector dimension", ge=8)

    # ========== Milvus ==========
    milvus_uri: str = Field(default="http://localhost:19530", description="Milvus / Zilliz Cloud URI")
    milvus_token: Optional[str] = Field(default=None, description="Milvus / Zilliz Cloud token")
    ticket_collection_name: str = Field(default="ticket", description="Vector collection for tickets")

    # ========== Vectorization ==========
    vectorization_enabled: bool = Field(default=True, description="Schedule store vectorization")
    vectorization_interval_seconds: int = Field(
        default=900,
        description="Seconds between store vectorization runs",
        ge=30
    )
    vectorization_sub_batch_size: int = Field(default=10, description="Tickets per sub-batch", ge=1, le=500)
    vectorization_max_concurrency: int = Field(
        default=10,
        description="Concurrent embedding calls within a sub-batch",
        ge=1,
        le=10
    )
    vectorization_sub_batch_delay_seconds: float = Field(
        default=0.1,
        description="Throttle delay between sub-batches",
        ge=0
    )
    vectorization_retry_delay_seconds: float = Field(
        default=5.0,
        description="Delay before retrying a failed sub-batch",
        ge=0
    )
    vectorization_max_consecutive_failures: int = Field(
        default=3,
        description="Consecutive sub-batch failures before the run halts",
        ge=1
    )
    vectorization_weight_multiplier: int = Field(
        default=10,
        description="Multiplier turning field weights into repetition counts",
        ge=1
    )

    # ========== Resolution Push ==========
    resolution_max_push_attempts: int = Field(
        default=5,
        description="Push attempts before a resolution is terminal-failed",
        ge=2
    )
    resolution_inline_attempts: int = Field(
        default=2,
        description="Push attempts made inline by resolve(); must leave attempts for the sweep",
        ge=1
    )
    resolution_backoff_base_seconds: float = Field(default=5.0, description="Push retry base delay", ge=0)
    resolution_backoff_max_seconds: float = Field(default=300.0, description="Push retry delay cap", ge=0)
    sweep_interval_seconds: int = Field(
        default=120,
        description="Seconds between pending-update sweeps",
        ge=10
    )
    sweep_batch_size: int = Field(default=50, description="Ledger entries per sweep", ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("embedding_provider")
    @classmethod
    def validate_embedding_provider(cls, v: str) -> str:
        v = v.lower()
        if v not in EMBEDDING_PROVIDERS:
            raise ValueError(f"embedding_provider must be one of {EMBEDDING_PROVIDERS}")
        return v

    @field_validator("embedding_api_keys", mode="before")
    @classmethod
    def split_api_keys(cls, v):
        """Accept a JSON list or a comma separated string."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return []
            if v.startswith("["):
                return json.loads(v)
            return [key.strip() for key in v.split(",") if key.strip()]
        return v

    @model_validator(mode="after")
    def validate_push_budget(self) -> "Settings":
        """Inline attempts must leave at least one attempt to the ledger sweep."""
        if self.resolution_inline_attempts >= self.resolution_max_push_attempts:
            raise ValueError(
                "resolution_inline_attempts must be lower than resolution_max_push_attempts"
            )
        return self

    @property
    def servicenow_configured(self) -> bool:
        return bool(self.servicenow_instance_url and self.servicenow_username and self.servicenow_password)


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

EMBEDDING_PROVIDERS = ("openai", "zai", "mock")


class SyncStream(str):
    """Checkpointed synchronization streams."""
    POLL = "poll"
    BULK_IMPORT = "bulk-import"
    VECTORIZATION = "vectorization"


class CheckpointStatus(str):
    """Checkpoint run states."""
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    COMPLETED = "completed"


class CloseCode(str):
    """ServiceNow incident close codes."""
    DUPLICATE = "Duplicate"
    KNOWN_ERROR = "Known error"
    NO_RESOLUTION = "No resolution provided"
    RESOLVED_BY_CALLER = "Resolved by caller"
    RESOLVED_BY_CHANGE = "Resolved by change"
    RESOLVED_BY_PROBLEM = "Resolved by problem"
    RESOLVED_BY_REQUEST = "Resolved by request"
    SOLUTION_PROVIDED = "Solution provided"
    WORKAROUND_PROVIDED = "Workaround provided"
    USER_ERROR = "User error"


class ResolutionMethod(str):
    """How a resolution was produced."""
    MANUAL = "manual"
    AUTOMATED = "automated"
    AI_ASSISTED = "ai_assisted"


class TicketSource(str):
    """Known ticket sources."""
    SERVICENOW = "ServiceNow"
    JIRA = "Jira"
    REMEDY = "Remedy"
    OTHER = "Other"


class IncidentState(str):
    """ServiceNow incident state values used when pushing updates."""
    RESOLVED = "6"
    CLOSED = "7"


# ========== Lists for validation ==========

VALID_STREAMS = [SyncStream.POLL, SyncStream.BULK_IMPORT, SyncStream.VECTORIZATION]
VALID_CHECKPOINT_STATUSES = [
    CheckpointStatus.IDLE, CheckpointStatus.RUNNING,
    CheckpointStatus.ERROR, CheckpointStatus.COMPLETED
]
VALID_CLOSE_CODES = [
    CloseCode.DUPLICATE, CloseCode.KNOWN_ERROR, CloseCode.NO_RESOLUTION,
    CloseCode.RESOLVED_BY_CALLER, CloseCode.RESOLVED_BY_CHANGE,
    CloseCode.RESOLVED_BY_PROBLEM, CloseCode.RESOLVED_BY_REQUEST,
    CloseCode.SOLUTION_PROVIDED, CloseCode.WORKAROUND_PROVIDED,
    CloseCode.USER_ERROR
]
VALID_RESOLUTION_METHODS = [
    ResolutionMethod.MANUAL, ResolutionMethod.AUTOMATED, ResolutionMethod.AI_ASSISTED
]
VALID_TICKET_SOURCES = [
    TicketSource.SERVICENOW, TicketSource.JIRA, TicketSource.REMEDY, TicketSource.OTHER
]

"""
Configuration Management for the Ontology Engine
Uses Pydantic for validation and type safety
"""
from __future__ import annotations

import os
from enum import Enum
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator


class DatabaseType(str, Enum):
    """Database types with a bundled profiling adapter"""
    SQLITE = "sqlite"


class LLMProvider(str, Enum):
    """Supported LLM providers"""
    BEDROCK_CLAUDE = "bedrock_claude"


class LogLevel(str, Enum):
    """Log levels"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseConfig(BaseModel):
    """Target datasource connection configuration"""
    db_type: DatabaseType = DatabaseType.SQLITE
    database: str = ":memory:"
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    connection_timeout: int = Field(default=30, ge=1, le=300)
    query_timeout: int = Field(default=60, ge=1, le=600)
    schema_cache_ttl: int = Field(default=300, ge=0, le=3600)

    # SQLite specific
    sqlite_path: Optional[str] = None

    model_config = {"use_enum_values": True}


class LLMConfig(BaseModel):
    """LLM configuration for Bedrock Claude"""
    provider: LLMProvider = LLMProvider.BEDROCK_CLAUDE
    model_id: str = "anthropic.claude-3-5-sonnet-20241022-v2:0"
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[SecretStr] = None
    aws_secret_access_key: Optional[SecretStr] = None
    aws_session_token: Optional[SecretStr] = None
    max_tokens: int = Field(default=4096, ge=100, le=100000)
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=1.0, ge=0.0, le=30.0)
    request_timeout: int = Field(default=120, ge=10, le=600)

    model_config = {"use_enum_values": True}


class DAGConfig(BaseModel):
    """Orchestrator lease, heartbeat and retry settings"""
    lease_stale_seconds: float = Field(default=120.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    max_node_retries: int = Field(default=3, ge=0, le=20)
    retry_initial_delay: float = Field(default=0.1, ge=0.0)
    retry_max_delay: float = Field(default=5.0, ge=0.0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    @field_validator("heartbeat_interval_seconds")
    @classmethod
    def validate_heartbeat(cls, v: float, info) -> float:
        """Heartbeat must renew well inside the staleness window"""
        stale = info.data.get("lease_stale_seconds")
        if stale is not None and v >= stale:
            raise ValueError("heartbeat_interval_seconds must be smaller than lease_stale_seconds")
        return v


class ClassificationConfig(BaseModel):
    """Column feature classification thresholds"""
    sample_limit: int = Field(default=50, ge=1, le=1000)
    pattern_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    external_id_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    unix_timestamp_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    enum_max_distinct: int = Field(default=50, ge=1)
    enum_max_cardinality: float = Field(default=0.01, ge=0.0, le=1.0)
    fk_overlap_sample: int = Field(default=1000, ge=10)
    fk_min_match_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    fk_direct_accept_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    currency_pattern_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    terminal_completion_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    initial_completion_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    clarification_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    batch_size: int = Field(default=8, ge=1, le=64)


class RelationshipConfig(BaseModel):
    """Relationship discovery and review thresholds"""
    min_value_overlap: float = Field(default=0.30, ge=0.0, le=1.0)
    max_orphan_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    max_reverse_orphan_rate: float = Field(default=0.50, ge=0.0, le=1.0)
    low_confidence_threshold: float = Field(default=0.50, ge=0.0, le=1.0)
    high_confidence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    validation_min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    cardinality_tolerance: float = Field(default=0.05, ge=0.0, le=1.0)
    sample_limit: int = Field(default=1000, ge=10)
    min_distinct_for_fk: int = Field(default=2, ge=1)
    use_llm_validation: bool = True
    batch_size: int = Field(default=8, ge=1, le=64)

    @field_validator("high_confidence_threshold")
    @classmethod
    def validate_band(cls, v: float, info) -> float:
        """The review band must not be inverted"""
        low = info.data.get("low_confidence_threshold")
        if low is not None and v <= low:
            raise ValueError("high_confidence_threshold must exceed low_confidence_threshold")
        return v


class WorkflowConfig(BaseModel):
    """Workflow task queue settings"""
    max_tables_per_batch: int = Field(default=20, ge=1, le=200)
    task_max_retries: int = Field(default=3, ge=0, le=24)
    task_initial_backoff: float = Field(default=0.5, ge=0.0)
    task_max_backoff: float = Field(default=30.0, ge=0.0)


class MetricsConfig(BaseModel):
    """Metrics and monitoring configuration"""
    enabled: bool = True
    include_latency_histograms: bool = True
    include_token_counts: bool = True


class SystemConfig(BaseModel):
    """Main system configuration"""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    dag: DAGConfig = Field(default_factory=DAGConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    relationships: RelationshipConfig = Field(default_factory=RelationshipConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = False
    debug_mode: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "SystemConfig":
        """Create configuration from environment variables (and an optional .env file)"""
        load_dotenv(env_file)

        db_config = DatabaseConfig(
            database=os.getenv("DB_NAME", ":memory:"),
            username=os.getenv("DB_USER"),
            password=SecretStr(os.getenv("DB_PASSWORD", "")) if os.getenv("DB_PASSWORD") else None,
            sqlite_path=os.getenv("SQLITE_PATH"),
        )

        llm_config = LLMConfig(
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            model_id=os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-5-sonnet-20241022-v2:0"),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
        )

        dag_config = DAGConfig(
            lease_stale_seconds=float(os.getenv("DAG_LEASE_STALE_SECONDS", "120")),
            heartbeat_interval_seconds=float(os.getenv("DAG_HEARTBEAT_SECONDS", "30")),
            max_node_retries=int(os.getenv("DAG_MAX_NODE_RETRIES", "3")),
        )

        return cls(
            database=db_config,
            llm=llm_config,
            dag=dag_config,
            log_level=LogLevel(os.getenv("LOG_LEVEL", "INFO")),
            json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
            debug_mode=os.getenv("DEBUG_MODE", "false").lower() == "true",
        )

    @classmethod
    def from_yaml(cls, path: str) -> "SystemConfig":
        """Load configuration from a YAML file"""
        with open(path, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
        return cls(**data)

    model_config = {"use_enum_values": True}


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = SystemConfig.from_env()
    return _config


def set_config(config: SystemConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance"""
    global _config
    _config = None

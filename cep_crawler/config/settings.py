"""
Configuration management for the CEP range crawler.

Uses pydantic-settings to load configuration from environment variables
and YAML files with proper validation.
"""

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class CrawlerSettings(BaseSettings):
    """
    Main settings class that loads configuration from environment variables
    and configuration files.
    """

    model_config = SettingsConfigDict(
        env_prefix="CEP_CRAWLER_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Environment
    environment: str = Field("dev", description="Environment name (dev/devlocal/staging/prod)")

    # AWS Configuration
    aws_region: str = Field("us-east-1")
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    localstack_endpoint: Optional[str] = Field(None, description="LocalStack/ElasticMQ endpoint for local development")

    # Backends
    store_backend: Literal["dynamodb", "memory"] = Field("dynamodb")
    broker_backend: Literal["sqs", "memory"] = Field("sqs")
    rate_limiter_backend: Literal["local", "redis"] = Field("local")

    # Persistence
    dynamodb_jobs_table: str = Field("cep-crawl-jobs", description="DynamoDB table for crawl jobs")
    dynamodb_results_table: str = Field("cep-crawl-results", description="DynamoDB table for item results")

    # Broker
    sqs_queue_url: Optional[str] = Field(None, description="SQS queue URL for CEP work items")
    receive_batch_size: int = Field(10, ge=1, le=10)
    receive_wait_seconds: int = Field(20, ge=0, le=20)
    visibility_timeout_seconds: int = Field(60, ge=1)
    retry_visibility_seconds: int = Field(30, ge=0, le=43200)

    # Redis Configuration
    redis_url: Optional[str] = Field(None, description="Redis connection URL for cross-process rate limiting")
    redis_rate_limit_key: str = Field("cep_crawler:rate_limit:last_call")

    # Worker identity
    worker_id: Optional[str] = Field(None, description="Unique worker instance ID")

    # Providers
    providers: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["viacep"])
    viacep_base_url: str = Field("https://viacep.com.br/ws")
    viacep_test_cep: str = Field("01001000")
    brasilapi_base_url: str = Field("https://brasilapi.com.br")
    brasilapi_test_cep: str = Field("01001000")
    provider_timeout_seconds: float = Field(5.0, gt=0, le=60)
    user_agent: str = Field("CEP-Crawler/1.0")

    # Rate Limiting
    min_request_interval_ms: int = Field(350, ge=0)
    max_concurrent_calls: int = Field(1, ge=1)

    # Health Monitoring
    health_check_interval_seconds: float = Field(60.0, gt=0)
    health_failure_threshold: int = Field(3, ge=1)
    health_wait_poll_seconds: float = Field(5.0, gt=0)
    health_wait_timeout_seconds: float = Field(30.0, gt=0)

    # Jobs
    max_items_per_job: int = Field(1000, ge=1)
    key_width: int = Field(8, ge=1)

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    json_logs: bool = Field(True, description="Whether to output JSON format logs")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_envs = ["dev", "devlocal", "staging", "prod"]
        if v not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v

    @field_validator("providers", mode="before")
    @classmethod
    def validate_providers(cls, v: Union[str, List[str], None]) -> List[str]:
        """Accept a JSON list or a comma separated string as well as a list"""
        if v is None or v == "":
            return []
        if isinstance(v, str):
            if v.lstrip().startswith("["):
                try:
                    parsed = json.loads(v)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid JSON list for providers: {e}")
                return [str(name).strip().lower() for name in parsed]
            return [name.strip().lower() for name in v.split(",") if name.strip()]
        return [str(name).strip().lower() for name in v]

    @model_validator(mode="after")
    def validate_backends(self) -> "CrawlerSettings":
        """Validate backend configuration based on environment"""
        if not self.providers:
            raise ValueError("At least one provider must be configured")
        if self.broker_backend == "sqs" and not self.sqs_queue_url:
            raise ValueError("sqs_queue_url is required when broker_backend is 'sqs'")
        if self.rate_limiter_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required when rate_limiter_backend is 'redis'")
        if self.environment == "devlocal":
            if self.broker_backend == "sqs" and not self.localstack_endpoint:
                raise ValueError("localstack_endpoint is required for devlocal environment with SQS")
        return self

    @property
    def min_request_interval_seconds(self) -> float:
        return self.min_request_interval_ms / 1000.0


def _expand_env_variables(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:default} in configuration values."""
    if isinstance(obj, str):

        def replace_env_var(match: "re.Match[str]") -> str:
            var_with_default = match.group(1)
            if ":" in var_with_default:
                var_name, default_value = var_with_default.split(":", 1)
                return os.getenv(var_name, default_value)
            return os.getenv(var_with_default, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, obj)
    elif isinstance(obj, dict):
        return {key: _expand_env_variables(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_variables(item) for item in obj]
    return obj


def load_config_from_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable expansion.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML file is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
        return _expand_env_variables(config)


def get_config_file_path(environment: str) -> Path:
    config_dir = Path(__file__).parent
    return config_dir / f"{environment}.yaml"


def load_settings(
    environment: Optional[str] = None, config_file: Optional[Path] = None, **overrides: Any
) -> CrawlerSettings:
    """
    Load crawler settings from environment variables and configuration files.

    Args:
        environment: Environment name. If None, read from CEP_CRAWLER_ENVIRONMENT
        config_file: Path to configuration file. If None, use the per-environment default
        **overrides: Additional configuration overrides

    Returns:
        Configured CrawlerSettings instance
    """
    if environment is None:
        environment = os.getenv("CEP_CRAWLER_ENVIRONMENT", "dev")

    config_data: Dict[str, Any] = {}

    if config_file:
        config_data = load_config_from_yaml(config_file)
    else:
        default_config_file = get_config_file_path(environment)
        if default_config_file.exists():
            config_data = load_config_from_yaml(default_config_file)

    config_data["environment"] = environment
    config_data.update(overrides)

    return CrawlerSettings(**config_data)


def get_settings() -> CrawlerSettings:
    """Default settings, usable as a FastAPI dependency."""
    return load_settings()


# Global settings instance (lazy-loaded)
_settings: Optional[CrawlerSettings] = None


def get_cached_settings() -> CrawlerSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings_cache() -> None:
    """Reset the cached settings instance (useful for testing)"""
    global _settings
    _settings = None

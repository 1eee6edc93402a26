"""Centralized configuration management for the safeops core."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LLMConfig:
    """Configuration for the LLM intent classifier."""

    enabled: bool = False
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    timeout: int = 30
    max_retries: int = 3
    max_tokens: Optional[int] = None

    @classmethod
    def from_env(cls) -> LLMConfig:
        """Load LLM configuration from environment variables."""
        return cls(
            enabled=_env_bool("USE_LLM_CLASSIFIER", "false"),
            model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.0")),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "3")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS")) if os.getenv("LLM_MAX_TOKENS") else None,
        )


@dataclass
class SecurityConfig:
    """Configuration for validation and prompt screening."""

    max_prompt_length: int = 2000
    min_confidence: float = 0.7
    enable_prompt_injection_detection: bool = True

    @classmethod
    def from_env(cls) -> SecurityConfig:
        """Load security configuration from environment variables."""
        return cls(
            max_prompt_length=int(os.getenv("MAX_PROMPT_LENGTH", "2000")),
            min_confidence=float(os.getenv("MIN_CONFIDENCE", "0.7")),
            enable_prompt_injection_detection=_env_bool("ENABLE_PROMPT_INJECTION", "true"),
        )


@dataclass
class VaultConfig:
    """Configuration for the credential vault."""

    encryption_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> VaultConfig:
        return cls(encryption_key=os.getenv("ENCRYPTION_KEY") or None)


@dataclass
class CloudConfig:
    """Configuration shared by the cloud adapters."""

    read_only: bool = True
    timeout_seconds: float = 15.0
    max_workers: int = 4
    aws_region: str = "us-east-1"
    aws_role_arn: Optional[str] = None
    aws_role_session_prefix: str = "SafeOpsSession"
    gcp_project_id: Optional[str] = None
    gcp_region: str = "us-central1"
    gcp_zone: str = "us-central1-a"
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> CloudConfig:
        """Load cloud adapter configuration from environment variables.

        The read-only gate is on unless ``SAFE_OPS_READ_ONLY`` is explicitly ``false``.
        """
        return cls(
            read_only=os.getenv("SAFE_OPS_READ_ONLY", "true").strip().lower() != "false",
            timeout_seconds=float(os.getenv("CLOUD_TIMEOUT_SECONDS", "15")),
            max_workers=int(os.getenv("CLOUD_MAX_WORKERS", "4")),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            aws_role_arn=os.getenv("AWS_ASSUME_ROLE_ARN") or None,
            gcp_project_id=os.getenv("PROJECT_ID") or None,
            gcp_region=os.getenv("GCP_REGION", "us-central1"),
            gcp_zone=os.getenv("GCP_ZONE", "us-central1-a"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET") or None,
        )


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    log_level: str = "INFO"
    log_path: Path = field(default_factory=lambda: Path("logs/safeops.log"))
    json_format: bool = True
    console_output: bool = True

    @classmethod
    def from_env(cls) -> LoggingConfig:
        """Load logging configuration from environment variables."""
        base_dir = Path(__file__).resolve().parent.parent
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_path=Path(os.getenv("LOG_PATH", base_dir / "logs" / "safeops.log")),
            json_format=_env_bool("LOG_JSON_FORMAT", "true"),
            console_output=_env_bool("LOG_CONSOLE", "true"),
        )


@dataclass
class AppConfig:
    """Main application configuration."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            security=SecurityConfig.from_env(),
            vault=VaultConfig.from_env(),
            cloud=CloudConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if not 0 <= self.llm.temperature <= 2:
            raise ValueError(f"Invalid LLM temperature: {self.llm.temperature}")

        if not 0 <= self.security.min_confidence <= 1:
            raise ValueError(f"Invalid min_confidence: {self.security.min_confidence}")

        if self.logging.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.logging.log_level}")

        if self.cloud.timeout_seconds <= 0:
            raise ValueError(f"Invalid cloud timeout: {self.cloud.timeout_seconds}")

        if self.cloud.max_workers < 1:
            raise ValueError(f"Invalid cloud max_workers: {self.cloud.max_workers}")

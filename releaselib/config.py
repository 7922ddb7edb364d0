"""Centralized configuration management for releaselib.

Uses Pydantic BaseSettings for environment variable loading with validation.
Configuration is loaded once and shared via get_settings().
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Release sharing settings.

    All settings can be overridden via environment variables.
    Environment variable names are uppercase versions of the field names.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========== AWS Configuration ==========
    aws_default_region: str = Field(
        default="ap-southeast-2",
        description="AWS region for all services",
    )
    aws_profile: Optional[str] = Field(
        default=None,
        description="AWS profile name (None uses default credentials chain)",
    )
    aws_account_id: Optional[str] = Field(
        default=None,
        description="AWS account ID where access point stacks are installed",
    )

    # ========== DynamoDB Table Names ==========
    releases_table_name: str = Field(
        default="release-share-releases",
        description="DynamoDB table holding release permissions and specimen selections",
    )
    dataset_cases_table_name: str = Field(
        default="release-share-dataset-cases",
        description="DynamoDB table holding case/patient/specimen/artifact documents",
    )
    manifests_table_name: str = Field(
        default="release-share-manifests",
        description="DynamoDB table holding activated master manifest snapshots",
    )

    # ========== S3 Configuration ==========
    temp_bucket: Optional[str] = Field(
        default=None,
        description="S3 bucket for generated templates and published htsget manifests",
    )

    # ========== Access Point Generation ==========
    # Conservative approximations of the 20KB access point policy limit and
    # a practical per-template resource count, not verified platform limits.
    objects_per_access_point: int = Field(
        default=20,
        description="Maximum objects listed in one access point policy",
    )
    access_points_per_stack: int = Field(
        default=30,
        description="Maximum access points in one nested CloudFormation template",
    )

    # ========== Presigning ==========
    presign_expiry_seconds: int = Field(
        default=60 * 60 * 24 * 7,
        description="Lifetime of presigned object URLs in seconds",
    )
    presign_max_workers: int = Field(
        default=16,
        description="Thread pool size used when presigning a manifest",
    )
    r2_endpoint_url: Optional[str] = Field(
        default=None,
        description="Cloudflare R2 S3-compatible endpoint URL",
    )
    r2_access_key_id: Optional[str] = Field(
        default=None,
        description="Access key used to sign R2 URLs",
    )
    r2_secret_access_key: Optional[str] = Field(
        default=None,
        description="Secret key used to sign R2 URLs",
    )

    # ========== Htsget ==========
    htsget_url: Optional[str] = Field(
        default=None,
        description="Base URL of the htsget endpoint serving released data",
    )
    htsget_max_age_seconds: int = Field(
        default=60 * 60 * 24,
        description="How long a published htsget manifest is reused before rewriting",
    )
    htsget_restrictions_file: Optional[str] = Field(
        default=None,
        description="YAML file mapping restriction labels to genomic regions",
    )

    # ========== Logging ==========
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR",
    )

    @field_validator("objects_per_access_point", "access_points_per_stack", "presign_max_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Packing and pool sizes must be positive."""
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @property
    def r2_configured(self) -> bool:
        """Check if R2 signing credentials are configured."""
        return bool(self.r2_endpoint_url and self.r2_access_key_id and self.r2_secret_access_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the process.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with different
    environment variables.
    """
    get_settings.cache_clear()


def get_settings_for_testing(**overrides) -> Settings:
    """Create settings instance with overrides for testing.

    This bypasses the cache, allowing tests to use custom configuration.
    """
    return Settings(**overrides)

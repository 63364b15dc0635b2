from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("RRC_DB_PATH", "rrc.db")
    log_level: str = os.getenv("RRC_LOG_LEVEL", "INFO")

    # Artifact resolution
    # unset: talk to the registry named in the image reference; "docker": ask the local daemon
    registry_url: str | None = os.getenv("RRC_REGISTRY_URL")
    registry_user: str | None = os.getenv("RRC_REGISTRY_USER")
    registry_password: str | None = os.getenv("RRC_REGISTRY_PASSWORD")
    registry_timeout_s: float = _env_float("RRC_REGISTRY_TIMEOUT_S", 10.0)
    image_repository: str = os.getenv("RRC_IMAGE_REPOSITORY", "ghcr.io/example/web")
    tag_template: str = os.getenv("RRC_TAG_TEMPLATE", "{revision}")

    # Retry policy for transient registry failures
    retry_attempts: int = _env_int("RRC_RETRY_ATTEMPTS", 5)
    retry_base_s: float = _env_float("RRC_RETRY_BASE_S", 2.0)
    retry_cap_s: float = _env_float("RRC_RETRY_CAP_S", 60.0)

    # Health gate
    health_interval_s: float = _env_float("RRC_HEALTH_INTERVAL_S", 1.0)
    health_timeout_s: float = _env_float("RRC_HEALTH_TIMEOUT_S", 120.0)
    health_streak: int = _env_int("RRC_HEALTH_STREAK", 3)
    health_path: str = os.getenv("RRC_HEALTH_PATH", "/health")

    # Rollout defaults
    auto_rollback: bool = _env_bool("RRC_AUTO_ROLLBACK", True)
    # Finished rollouts kept in memory; older ones are served from sqlite.
    retain_finished: int = _env_int("RRC_RETAIN_FINISHED", 100)

    # Docker workload
    docker_network: str = os.getenv("RRC_DOCKER_NETWORK", "rrc")
    internal_port: int = _env_int("RRC_INTERNAL_PORT", 80)

    # API access
    admin_user: str = os.getenv("RRC_ADMIN_USER", "admin")
    admin_password: str = os.getenv("RRC_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("RRC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("RRC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("RRC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("RRC_SMTP_USER")
    smtp_password: str | None = os.getenv("RRC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("RRC_EMAIL_FROM")
    email_to: str | None = os.getenv("RRC_EMAIL_TO")


settings = Settings()

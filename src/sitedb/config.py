"""Configuration management for sitedb."""
import os
from typing import List
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class DatabaseConfig(BaseModel):
    """Embedded database location."""
    path: str = Field(default_factory=lambda: os.getenv("SITEDB_PATH", "data/site.db"))


class CacheConfig(BaseModel):
    """Query cache configuration."""
    enabled: bool = Field(
        default_factory=lambda: os.getenv("CACHE_ENABLED", "true").lower() == "true"
    )
    capacity: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_CAPACITY", "1000"))
    )
    default_ttl: float = Field(
        default_factory=lambda: float(os.getenv("CACHE_DEFAULT_TTL", "300"))
    )


class PerformanceConfig(BaseModel):
    """Performance budgets (milliseconds) and telemetry buffer sizes."""
    read_budget_ms: float = Field(
        default_factory=lambda: float(os.getenv("BUDGET_READ_MS", "100"))
    )
    write_budget_ms: float = Field(
        default_factory=lambda: float(os.getenv("BUDGET_WRITE_MS", "200"))
    )
    search_budget_ms: float = Field(
        default_factory=lambda: float(os.getenv("BUDGET_SEARCH_MS", "300"))
    )
    batch_budget_ms: float = Field(
        default_factory=lambda: float(os.getenv("BUDGET_BATCH_MS", "1000"))
    )
    slow_query_ms: float = Field(
        default_factory=lambda: float(os.getenv("SLOW_QUERY_MS", "100"))
    )
    buffer_size: int = Field(default=1000)


class BreakerConfig(BaseModel):
    """Circuit breaker configuration (seconds)."""
    failure_threshold: int = Field(
        default_factory=lambda: int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
    )
    open_duration: float = Field(
        default_factory=lambda: float(os.getenv("BREAKER_OPEN_DURATION", "60"))
    )
    half_open_probe_delay: float = Field(
        default_factory=lambda: float(os.getenv("BREAKER_PROBE_DELAY", "30"))
    )


class RecoveryConfig(BaseModel):
    """Error log bounds."""
    error_log_capacity: int = Field(default=1000)
    error_retention_hours: int = Field(
        default_factory=lambda: int(os.getenv("ERROR_RETENTION_HOURS", "72"))
    )


class MaintenanceConfig(BaseModel):
    """Retention windows and thresholds for scheduled maintenance."""
    performance_log_retention_days: int = Field(
        default_factory=lambda: int(os.getenv("PERFORMANCE_LOG_RETENTION", "7"))
    )
    analytics_retention_days: int = Field(
        default_factory=lambda: int(os.getenv("ANALYTICS_RETENTION", "90"))
    )
    vacuum_threshold_mb: float = Field(
        default_factory=lambda: float(os.getenv("VACUUM_THRESHOLD_MB", "100"))
    )
    alert_db_size_mb: float = Field(
        default_factory=lambda: float(os.getenv("ALERT_DB_SIZE_MB", "500"))
    )
    max_log_entries: int = Field(default=100000)
    stale_media_days: int = Field(default=180)
    # seeded categories that are never removed by the monthly cleanup
    protected_category_max_id: int = Field(default=4)


class AlertConfig(BaseModel):
    """Alert and notification configuration."""
    # Email settings
    email_enabled: bool = Field(
        default_factory=lambda: os.getenv("EMAIL_ENABLED", "false").lower() == "true"
    )
    smtp_host: str = Field(
        default_factory=lambda: os.getenv("SMTP_HOST", "smtp.gmail.com")
    )
    smtp_port: int = Field(
        default_factory=lambda: int(os.getenv("SMTP_PORT", "587"))
    )
    smtp_user: str = Field(
        default_factory=lambda: os.getenv("SMTP_USER", "")
    )
    smtp_password: str = Field(
        default_factory=lambda: os.getenv("SMTP_PASSWORD", "")
    )
    email_recipients: List[str] = Field(
        default_factory=lambda: os.getenv("EMAIL_RECIPIENTS", "").split(",") if os.getenv("EMAIL_RECIPIENTS") else []
    )

    # Slack settings
    slack_enabled: bool = Field(
        default_factory=lambda: os.getenv("SLACK_ENABLED", "false").lower() == "true"
    )
    slack_webhook_url: str = Field(
        default_factory=lambda: os.getenv("SLACK_WEBHOOK_URL", "")
    )

    max_alerts_per_hour: int = Field(
        default_factory=lambda: int(os.getenv("MAX_ALERTS_PER_HOUR", "10"))
    )


class HealthConfig(BaseModel):
    """Health report and alert thresholds."""
    port: int = Field(
        default_factory=lambda: int(os.getenv("HEALTH_PORT", "8080"))
    )
    max_avg_query_ms: float = Field(default=100.0)
    max_slow_queries: int = Field(default=10)
    min_cache_hit_rate: float = Field(default=70.0)
    alert_avg_query_ms: float = Field(default=200.0)
    critical_avg_query_ms: float = Field(default=500.0)


class Config(BaseModel):
    """Main application configuration."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

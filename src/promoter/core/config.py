from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentSettings(BaseModel):
    """Per-environment release settings."""
    NAMESPACE: str
    RELEASE_NAME: str = "web"
    VALUES_FILE: str = ""
    CANARY_REPLICAS: int = 1
    TARGET_REPLICAS: int = 3
    READY_TIMEOUT_SECONDS: float = 180.0
    PROMOTE_TIMEOUT_SECONDS: float = 240.0
    PROBE_URL: str = ""
    JOB_PATTERN: str = ".*"


class Settings(BaseSettings):
    PROJECT_NAME: str = "canary-promoter"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Environment
    ENV: str = "dev"  # dev, staging, production
    DEBUG: bool = False

    # Metrics backend
    PROMETHEUS_URL: str = "http://prometheus:9090"
    METRICS_QUERY_TIMEOUT_SECONDS: float = 10.0

    # SLO gate
    MAX_ERROR_RATE_PERCENT: float = 2.0
    MAX_P95_SECONDS: float = 0.5
    WATCH_TOTAL_CHECKS: int = 10
    WATCH_POLL_INTERVAL_SECONDS: float = 60.0
    MAX_CONSECUTIVE_QUERY_FAILURES: int = 3

    # Health probe
    PROBE_TIMEOUT_SECONDS: float = 10.0
    PROBE_MARKER: str = "<!DOCTYPE HTML>"

    # Release
    IMAGE_REPOSITORY: str = "registry.example.com/web"
    CHART: str = "./charts/web"

    DEV: EnvironmentSettings = EnvironmentSettings(
        NAMESPACE="dev",
        CANARY_REPLICAS=1,
        TARGET_REPLICAS=1,
        PROBE_URL="http://web.dev.svc.cluster.local/",
        JOB_PATTERN="web-dev.*",
    )
    STAGE: EnvironmentSettings = EnvironmentSettings(
        NAMESPACE="stage",
        CANARY_REPLICAS=1,
        TARGET_REPLICAS=3,
        PROBE_URL="http://web.stage.svc.cluster.local/",
        JOB_PATTERN="web-stage.*",
    )
    PROD: EnvironmentSettings = EnvironmentSettings(
        NAMESPACE="prod",
        CANARY_REPLICAS=3,
        TARGET_REPLICAS=3,
        READY_TIMEOUT_SECONDS=300.0,
        PROMOTE_TIMEOUT_SECONDS=300.0,
        PROBE_URL="http://web.prod.svc.cluster.local/",
        JOB_PATTERN="web-prod.*",
    )

    # Prod policy
    PROD_REQUIRES_TAG: bool = True
    FORCE_PROD: bool = False
    ALLOW_UNCLEAN_PROD: bool = False

    # Approval gate expiry; 0 waits indefinitely
    APPROVAL_EXPIRY_SECONDS: float = 0.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        env_nested_delimiter="__",
    )


settings = Settings()

from pydantic_settings import BaseSettings


class ConfigurationError(Exception):
    """A backend configuration file cannot be read or parsed."""


class Settings(BaseSettings):
    # Comma-separated list of YAML files holding backend configurations
    config_files: str = ""

    log_level: str = "INFO"

    # HTTP server
    http_host: str = "0.0.0.0"
    http_port: int = 8080

    # Per-backend deadline for a single search call; <= 0 disables it
    backend_timeout_seconds: float = 30.0

    # Ping Elasticsearch/OpenSearch when loading; unreachable backends are excluded
    ping_backends: bool = True

    # CloudWatch Logs Insights polling
    cloudwatch_poll_interval_seconds: float = 1.0
    cloudwatch_max_poll_attempts: int = 60

    class Config:
        env_prefix = "APM_HUB_"
        env_file = ".env"

    def get_config_files(self) -> list[str]:
        """Return the configured backend configuration files as a list of paths."""
        raw = self.config_files or ""
        return [p.strip() for p in raw.split(",") if p.strip()]

    def get_backend_timeout(self) -> float | None:
        return self.backend_timeout_seconds if self.backend_timeout_seconds > 0 else None

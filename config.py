from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Screen Time Earnings API"
    app_version: str = "1.0.0"
    app_env: str = "default"  # default, development, production or testing
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Persistence settings
    data_dir: Path = Path(".")
    users_file: str = "users.json"
    feedbacks_file: str = "feedbacks.json"

    # Security settings
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30
    require_session: bool = False
    session_ttl_seconds: int = 86400
    bcrypt_rounds: int = 12

    # API settings
    echo_withdrawal_request: bool = False  # include the created request in /withdraw replies

    # CORS settings
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "POST", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def users_path(self) -> Path:
        return self.data_dir / self.users_file

    @property
    def feedbacks_path(self) -> Path:
        return self.data_dir / self.feedbacks_file


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings for the environment named by APP_ENV."""
    return get_settings_for_environment(Settings().app_env)


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    rate_limit_per_minute: int = 100


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    require_session: bool = True


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"
    rate_limit_enabled: bool = False
    # Lowest cost bcrypt accepts
    bcrypt_rounds: int = 4


def get_settings_for_environment(env: str = "development", **overrides) -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class(**overrides)

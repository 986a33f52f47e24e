from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "postgresql://automation:automation@db:5432/automation"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Comma-separated allowed origins, or "*" to allow all.
    CORS_ORIGINS: str = "*"

    # Bearer token expected by the /cron endpoints. Empty disables the check.
    CRON_SECRET: str = ""

    # Text generation (OpenAI-compatible chat completions endpoint)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    FEEDBACK_GENERATION_TIMEOUT_SEC: float = 30.0

    # Defaults for the automation settings row (system_settings)
    AUTOMATION_TIMEZONE: str = "Europe/Berlin"
    FEEDBACK_DELAY_MIN_MINUTES: int = 60
    FEEDBACK_DELAY_MAX_MINUTES: int = 120
    QUIET_HOURS_ENABLED: bool = True
    QUIET_HOURS_START: int = 21
    QUIET_HOURS_END: int = 8
    UPSELL_REVENUE_THRESHOLD: float = 20000.0
    UPSELL_CONSECUTIVE_WEEKS: int = 12

    @property
    def cors_origins_list(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()

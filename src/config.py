from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    database_url: str | None = None
    brevo_webhook_secret: str | None = None
    aisensy_webhook_secret: str | None = None
    delivery_update_max_attempts: int = 3
    delivery_status_max_conversations: int = 200
    realtime_schema: str = "public"
    internal_scheduler_secret: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 2.0

    keycrm_base_url: str = "https://openapi.keycrm.app/v1"
    keycrm_api_token: str = ""
    crm_request_timeout_seconds: float = 15.0
    crm_chat_title_prefix: str = "Chat with"

    locator_max_pages: int = 3
    locator_page_size: int = 50
    locator_deadline_seconds: float = 8.0

    sweep_page_budget: int = 20
    sweep_page_size: int = 100
    sweep_deadline_seconds: float = 50.0
    sweep_card_lock_seconds: int = 300
    sweep_log_limit: int = 50

    campaign_write_lock_seconds: int = 10
    webhook_log_limit: int = 100

    cron_secret: str = ""
    manychat_token: str = ""
    alert_bot_token: str = ""
    alert_chat_id: str = ""

    log_level: str = "INFO"
    debug: bool = False

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def get_settings() -> Settings:
    return settings

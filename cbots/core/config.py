# cbots/core/config.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Core ---
    DATABASE_URL: str = "sqlite:///./cbots.db"
    SECRET_KEY: str = "change-me"
    LOG_LEVEL: str = "INFO"

    # --- Identity ---
    AUTH_MODE: str = "password"  # password / external_uid
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_HOURS: int = 24
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    ADMIN_USER_IDS: str | None = None  # comma-separated handles or emails

    # --- Blob store ---
    UPLOAD_DIR: str = "uploads"

    # --- Money ---
    CURRENCY: str = "USDT"
    SIGNUP_BONUS: str = "5"
    SIGNUP_BONUS_WALLET: str = "bonus"  # "main" makes the bonus spendable

    # --- Rewards / referrals ---
    REFERRAL_MILESTONE_SIZE: int = 100
    REFERRAL_MILESTONE_BONUS: str = "15"
    REFERRAL_PROFIT_SHARE_PERCENT: str = "0"  # 0 disables
    REFERRAL_FIRST_BUY_BONUS: str = "0"       # 0 disables

    # --- Notifications (optional) ---
    BOT_TOKEN: str | None = None
    LOG_TRANSACTIONS_CHAT_ID: str | None = None
    NOTIFY_DATABASE: bool = True

    # --- i18n ---
    DEFAULT_LANGUAGE: str = "pt"


settings = Settings()

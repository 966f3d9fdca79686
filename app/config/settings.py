from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    mongo_uri: str = Field(...)
    webhook_verify_token: str = Field(...)
    meta_app_secret: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o"

    graph_api_base: str = "https://graph.facebook.com/v18.0"
    instagram_access_token: Optional[str] = None
    instagram_account_id: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None

    # When set, WhatsApp replies go out through Twilio instead of the Cloud API
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None

    default_business_id: Optional[str] = None
    default_business_name: str = "Our Store"
    business_upi_id: str = "your-business@upi"
    payment_qr_url: Optional[str] = None
    default_language: str = "english"

    require_contact_phone: bool = False
    payment_auto_verify: bool = True
    payment_accept_confidence: int = 80
    match_min_score: float = 2.0
    history_window: int = 6

    ai_timeout_seconds: float = 5.0
    vision_timeout_seconds: float = 6.0
    http_timeout_seconds: float = 4.0
    # Routing cap for one event, and the shared cap for a whole webhook delivery
    event_budget_seconds: float = 8.0
    delivery_budget_seconds: float = 10.0

    admin_token: Optional[str] = None

    @field_validator("default_language", mode="before")
    @classmethod
    def normalize_language(cls, v):
        if not v:
            return "english"
        return str(v).strip().lower()

    @field_validator("meta_app_secret", "openai_api_key", "admin_token", "default_business_id", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        # Deploy templates often leave these as empty strings or "none"
        if v is None:
            return None
        value = str(v).strip()
        if not value or value.lower() == "none":
            return None
        return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()

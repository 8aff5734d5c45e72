from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator
from typing import Annotated, Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None

    # Firebase
    firebase_project_id: str
    firebase_credentials_path: str
    firebase_web_api_key: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_monthly: Optional[str] = None
    stripe_price_yearly: Optional[str] = None
    stripe_price_lifetime: Optional[str] = None

    # HighLevel CRM
    highlevel_api_key: Optional[str] = None
    highlevel_location_id: Optional[str] = None
    highlevel_api_url: str = "https://rest.gohighlevel.com/v1"

    # API
    api_v1_str: str = "/api/v1"
    base_url: str = "http://localhost:3000"

    # Environment
    environment: str = "development"
    debug: bool = True
    rate_limit_enabled: bool = True

    # Encryption (Fernet key for the refresh-token session cookie)
    session_encryption_key: str

    # CORS
    cors_origins: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Admin allow-list
    admin_emails: Annotated[List[str], NoDecode] = []

    @field_validator('cors_origins', 'admin_emails', mode='before')
    @classmethod
    def parse_comma_separated(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse a list from an environment variable (comma-separated) or use the given list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()

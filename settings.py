import os
from typing import Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Process-wide configuration, read from the environment once at startup."""

    mongodb_uri: str = "mongodb://localhost:27017"
    database_name: str = "holohaven"

    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 60 * 24 * 7  # 7 days

    port: int = 8000
    environment: str = "development"

    cloudinary_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None

    expo_access_token: Optional[str] = None
    push_chunk_size: int = Field(100, ge=1, le=100)

    order_transition_policy: str = "permissive"

    token_sweep_interval_seconds: int = 60 * 60 * 24
    stale_token_days: int = 30

    seed_on_startup: bool = True


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    env = os.environ
    return Settings(
        mongodb_uri=env.get("MONGODB_URI", "mongodb://localhost:27017"),
        database_name=env.get("DATABASE_NAME", "holohaven"),
        jwt_secret=env.get("JWT_SECRET", "dev-secret-change-me"),
        jwt_expires_min=int(env.get("JWT_EXPIRES_MIN", 60 * 24 * 7)),
        port=int(env.get("PORT", 8000)),
        environment=env.get("ENVIRONMENT", "development"),
        cloudinary_name=env.get("CLOUDINARY_NAME"),
        cloudinary_api_key=env.get("CLOUDINARY_API_KEY"),
        cloudinary_api_secret=env.get("CLOUDINARY_API_SECRET"),
        expo_access_token=env.get("EXPO_ACCESS_TOKEN"),
        push_chunk_size=int(env.get("PUSH_CHUNK_SIZE", 100)),
        order_transition_policy=env.get("ORDER_TRANSITION_POLICY", "permissive"),
        token_sweep_interval_seconds=int(env.get("TOKEN_SWEEP_INTERVAL_SECONDS", 60 * 60 * 24)),
        stale_token_days=int(env.get("STALE_TOKEN_DAYS", 30)),
        seed_on_startup=_flag(env.get("SEED_ON_STARTUP", "true")),
    )

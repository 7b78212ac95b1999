import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "e2recycle"
    store_backend: str = "mongo"
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days
    admin_email: str = "admin@e2recycle.com"
    admin_password: str = "admin123"
    commission_rate: int = 8
    log_level: str = "INFO"
    port: int = 5000


def load_settings() -> Settings:
    """Build Settings from the environment, reading .env outside production."""
    if os.environ.get("APP_ENV") != "production":
        load_dotenv()

    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        database_name=os.getenv("DATABASE_NAME", defaults.database_name),
        store_backend=os.getenv("STORE_BACKEND", defaults.store_backend).lower(),
        jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", defaults.jwt_algorithm),
        access_token_expire_minutes=int(
            os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", defaults.access_token_expire_minutes)
        ),
        admin_email=os.getenv("ADMIN_EMAIL", defaults.admin_email).lower(),
        admin_password=os.getenv("ADMIN_PASSWORD", defaults.admin_password),
        commission_rate=int(os.getenv("COMMISSION_RATE", defaults.commission_rate)),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        port=int(os.getenv("PORT", defaults.port)),
    )

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Circulation settings
    bulk_copy_limit: int = int(os.getenv("BULK_COPY_LIMIT", "50"))
    self_service_max_days: int = int(os.getenv("SELF_SERVICE_MAX_DAYS", "7"))
    default_return_time: str = os.getenv("DEFAULT_RETURN_TIME", "13:00")
    allocation_retries: int = int(os.getenv("ACCESSION_ALLOCATION_RETRIES", "3"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()

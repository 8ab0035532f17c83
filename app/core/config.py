import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL")

    # Internal collaborator services
    CANCELLATION_API_SERVICE_URL: str = os.getenv(
        "CANCELLATION_API_SERVICE_URL", "http://cancellation-api-service:8011"
    )
    AUTOMATION_SERVICE_URL: str = os.getenv(
        "AUTOMATION_SERVICE_URL", "http://automation-service:8012"
    )
    INSTRUCTION_SERVICE_URL: str = os.getenv("INSTRUCTION_SERVICE_URL", "")
    INTERNAL_SERVICE_TOKEN: str = os.getenv("INTERNAL_SERVICE_TOKEN", "")
    COLLABORATOR_TIMEOUT_SECONDS: float = float(
        os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "30")
    )

    CANCELLATION_WEBHOOK_SECRET: str = os.getenv("CANCELLATION_WEBHOOK_SECRET", "")

    # Orchestration tuning
    CAPABILITY_CACHE_TTL_SECONDS: int = int(
        os.getenv("CAPABILITY_CACHE_TTL_SECONDS", "3600")
    )
    CANCELLATION_FALLBACK_DELAY_SECONDS: float = float(
        os.getenv("CANCELLATION_FALLBACK_DELAY_SECONDS", "1.0")
    )
    ORCHESTRATION_SESSION_TTL_SECONDS: int = int(
        os.getenv("ORCHESTRATION_SESSION_TTL_SECONDS", "1800")
    )

    API_BASE_PATH: str = os.getenv("API_BASE_PATH", "/api/cancellation")

    class Config:
        env_file = ".env"


settings = Settings()

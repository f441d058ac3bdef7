from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    QUEUE_NAME: str = Field(default="fulfillment")

    # Worker pool
    WORKER_CONCURRENCY: int = Field(default=20, ge=1)
    WORKER_HEARTBEAT_INTERVAL: float = Field(default=10.0, gt=0)
    WORKER_HEARTBEAT_TIMEOUT: float = Field(default=30.0, gt=0)
    POLL_INTERVAL: float = Field(default=1.0, gt=0)
    MAX_JOB_DEFERRALS: int = Field(default=60, ge=0)

    # Priority classes (higher weight = served more often)
    STRICT_PRIORITY: bool = Field(default=False)
    QUEUE_WEIGHT_CRITICAL: int = Field(default=6, ge=1)
    QUEUE_WEIGHT_HIGH: int = Field(default=4, ge=1)
    QUEUE_WEIGHT_DEFAULT: int = Field(default=2, ge=1)
    QUEUE_WEIGHT_LOW: int = Field(default=1, ge=1)

    # Retry backoff
    RETRY_BASE_DELAY: float = Field(default=1.0, gt=0)
    RETRY_MAX_DELAY: float = Field(default=300.0, gt=0)
    RETRY_JITTER: float = Field(default=0.25, ge=0, lt=1)

    # How long a warehouse job waits before checking payment again
    PAYMENT_WAIT_INTERVAL: float = Field(default=10.0, gt=0)

    # Simulated integrations
    SIMULATED_LATENCY: bool = Field(default=True)
    INVOICE_BASE_URL: str = Field(default="https://storage.example.com/invoices")

    LOG_LEVEL: str = Field(default="INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def queue_weights(self) -> dict:
        return {
            "critical": self.QUEUE_WEIGHT_CRITICAL,
            "high": self.QUEUE_WEIGHT_HIGH,
            "default": self.QUEUE_WEIGHT_DEFAULT,
            "low": self.QUEUE_WEIGHT_LOW,
        }


settings = Settings()

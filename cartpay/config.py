"""
Configuration management for the cart-to-payment pipeline.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "cartpay")
    REGION: str = os.getenv("REGION", "af-south-1")

    # Redis settings (durable local cart storage)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_bool("REDIS_SSL")

    # Cart settings
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(7 * 24 * 60 * 60)))  # 7 days default
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    # In-memory sessions idle this long are dropped; the stored cart stays in Redis
    SESSION_IDLE_SECONDS: float = float(os.getenv("SESSION_IDLE_SECONDS", str(30 * 60)))
    SESSION_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "60"))

    # Backend REST API (orders, payments, cart sync)
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000/api")
    API_TOKEN: Optional[str] = os.getenv("API_TOKEN")
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    CART_SYNC_ENABLED: bool = _env_bool("CART_SYNC_ENABLED")

    # Mobile money confirmation
    PAYMENT_POLL_INTERVAL_SECONDS: float = float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", "3"))
    PAYMENT_TIMEOUT_SECONDS: float = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "120"))

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    @classmethod
    def redis_url(cls) -> str:
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_secrets(cls) -> None:
        """Load Redis auth token and backend API token from AWS Secrets Manager"""
        secret_name = os.getenv("CARTPAY_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, keep environment values

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])
        except Exception as e:
            logger.warning(f"Could not load secrets from Secrets Manager: {e}")
            return

        if not cls.REDIS_AUTH_TOKEN:
            cls.REDIS_AUTH_TOKEN = secret_data.get("redis_auth_token")
        if "redis_endpoint" in secret_data:
            cls.REDIS_HOST = secret_data["redis_endpoint"]
        if not cls.API_TOKEN:
            cls.API_TOKEN = secret_data.get("api_token")


# Load secrets at module import
Config.load_secrets()

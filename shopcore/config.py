"""
Configuration management for the order-processing core.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "shopcore")
    REGION: str = os.getenv("REGION", "ap-southeast-2")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    SLOW_REQUEST_MS: float = float(os.getenv("SLOW_REQUEST_MS", "500"))

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_flag("REDIS_SSL", "true")

    # Cart settings
    GUEST_CART_TTL_SECONDS: int = int(os.getenv("GUEST_CART_TTL_SECONDS", str(30 * 24 * 60 * 60)))  # 30 days
    GUEST_CART_RETENTION_DAYS: int = int(os.getenv("GUEST_CART_RETENTION_DAYS", "30"))
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))
    MERGE_MAX_ATTEMPTS: int = int(os.getenv("MERGE_MAX_ATTEMPTS", "3"))

    # Order settings
    ORDER_SWAP_MAX_ATTEMPTS: int = int(os.getenv("ORDER_SWAP_MAX_ATTEMPTS", "5"))
    ORDER_NUMBER_MAX_ATTEMPTS: int = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "10"))
    ATTENTION_THRESHOLD_HOURS: int = int(os.getenv("ATTENTION_THRESHOLD_HOURS", "24"))

    # Notifications
    EVENTS_CHANNEL_PREFIX: str = os.getenv("EVENTS_CHANNEL_PREFIX", "shopcore")
    EVENTS_ENABLED: bool = _env_flag("EVENTS_ENABLED", "true")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50
    # Stored script replies, for replaying a call whose reply was lost
    OPERATION_MARKER_TTL_SECONDS: int = int(os.getenv("OPERATION_MARKER_TTL_SECONDS", "600"))

    @classmethod
    def redis_url(cls) -> str:
        """Build the connection URL; rediss:// when encryption in transit is on"""
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, use no auth

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")
            # Continue without auth token (may fail on connection)

# Load secrets at module import
Config.load_redis_secrets()

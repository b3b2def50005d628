import os
from dataclasses import dataclass


def _get_bool(env_name: str, default: bool = False) -> bool:
    val = os.getenv(env_name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass
class Settings:
    # App
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Database (SQLite by default in a Docker volume)
    DB_URL: str = os.getenv("DB_URL", "sqlite+aiosqlite:////data/data.db")

    # Redis
    REDIS_HOST: str = os.getenv("REDIS_HOST", "redis")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USERNAME: str = os.getenv("REDIS_USERNAME", "")
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_SSL: bool = _get_bool("REDIS_SSL", False)
    REDIS_STOCK_CHANNEL: str = os.getenv("REDIS_STOCK_CHANNEL", "stock-updates")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")
    ORDER_PLACED_TOPIC: str = os.getenv("ORDER_PLACED_TOPIC", "order-placed")
    INVENTORY_GROUP_ID: str = os.getenv("INVENTORY_GROUP_ID", "inventory-service")
    PAYMENT_GROUP_ID: str = os.getenv("PAYMENT_GROUP_ID", "payment-service")

    # Remote collaborators; an empty inventory URL means the in-process engine
    USER_SERVICE_URL: str = os.getenv("USER_SERVICE_URL", "http://user-service:8081")
    PRODUCT_SERVICE_URL: str = os.getenv("PRODUCT_SERVICE_URL", "http://product-service:8082")
    INVENTORY_SERVICE_URL: str = os.getenv("INVENTORY_SERVICE_URL", "")

    # Timeouts, seconds
    REMOTE_TIMEOUT: float = float(os.getenv("REMOTE_TIMEOUT", "3.0"))
    WRITE_TIMEOUT: float = float(os.getenv("WRITE_TIMEOUT", "5.0"))
    PUBLISH_TIMEOUT: float = float(os.getenv("PUBLISH_TIMEOUT", "10.0"))

    # Consumers
    RUN_INVENTORY_CONSUMER: bool = _get_bool("RUN_INVENTORY_CONSUMER", True)
    RUN_PAYMENT_CONSUMER: bool = _get_bool("RUN_PAYMENT_CONSUMER", True)
    PAYMENT_DEDUPLICATE: bool = _get_bool("PAYMENT_DEDUPLICATE", False)


settings = Settings()

"""
Product Service — 設定

すべての設定は環境変数から読み込む。
Settings はプロセス起動時に一度だけ組み立て、各コンポーネントへ
コンストラクタ引数として渡す（グローバル変数には置かない）。
"""

import os
import socket
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    redis_url: str = "redis://localhost:6379"
    jwt_algorithm: str = "HS256"
    fulfillment_stream: str = "order_fulfillment"
    fulfillment_group: str = "fulfillment"
    consumer_name: str = "product-service"
    run_consumer: bool = True
    publish_max_attempts: int = 5
    publish_backoff_seconds: float = 0.2
    broker_ready_timeout_seconds: float = 10.0
    lookup_timeout_seconds: float = 5.0
    claim_idle_ms: int = 30_000
    reconcile_interval_seconds: float = 60.0
    reconcile_grace_seconds: float = 30.0
    log_level: str = "INFO"


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """環境変数から Settings を組み立てる。DATABASE_URL と JWT_SECRET は必須。"""
    env = os.environ
    return Settings(
        database_url=env["DATABASE_URL"],
        jwt_secret=env["JWT_SECRET"],
        redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
        jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
        fulfillment_stream=env.get("FULFILLMENT_STREAM", "order_fulfillment"),
        fulfillment_group=env.get("FULFILLMENT_GROUP", "fulfillment"),
        consumer_name=env.get("CONSUMER_NAME", socket.gethostname()),
        run_consumer=_flag(env.get("RUN_CONSUMER", "1")),
        publish_max_attempts=int(env.get("PUBLISH_MAX_ATTEMPTS", "5")),
        publish_backoff_seconds=float(env.get("PUBLISH_BACKOFF_SECONDS", "0.2")),
        broker_ready_timeout_seconds=float(
            env.get("BROKER_READY_TIMEOUT_SECONDS", "10")
        ),
        lookup_timeout_seconds=float(env.get("LOOKUP_TIMEOUT_SECONDS", "5")),
        claim_idle_ms=int(env.get("CLAIM_IDLE_MS", "30000")),
        reconcile_interval_seconds=float(env.get("RECONCILE_INTERVAL_SECONDS", "60")),
        reconcile_grace_seconds=float(env.get("RECONCILE_GRACE_SECONDS", "30")),
        log_level=env.get("LOG_LEVEL", "INFO"),
    )

import yaml
import os
from typing import List, Optional
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    url: str
    pool_size: int = 5
    echo: bool = False


class OutboxConfig(BaseModel):
    """
    Configuration for the outbox worker.

    Controls how jobs are leased, how often the table is polled and how
    failed deliveries are retried.
    """
    batch_size: int = 25
    poll_interval_seconds: float = 2.0

    # Retry policy: delay = retry_delay_seconds * backoff_factor ** attempts
    retry_delay_seconds: float = 60.0
    backoff_factor: float = 1.0  # 1.0 = fixed delay
    max_attempts: int = 5

    # Lease expiry for jobs left in 'processing' by a crashed worker
    lease_seconds: int = 300
    reclaim_interval_seconds: float = 60.0

    # Parallelism across jobs within one leased batch
    max_workers: int = 1

    default_channels: List[str] = Field(default_factory=lambda: ['socket', 'email'])


class SmtpConfig(BaseModel):
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: str = "no-reply@notifications.local"
    timeout_seconds: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.host and self.port and self.username and self.password)


class SocketConfig(BaseModel):
    """
    Socket channel settings.

    The worker usually runs outside the socket server process, so emits are
    relayed through Redis when redis_url is set.
    """
    enabled: bool = True
    event_name: str = "notification:new"
    redis_url: Optional[str] = None
    key_prefix: str = "sockets"


class WebhookConfig(BaseModel):
    enabled: bool = False
    url: Optional[str] = None
    timeout_seconds: float = 30.0
    allow_private_hosts: bool = False  # Only for local development


class PushConfig(BaseModel):
    """
    Firebase Cloud Messaging settings for the per-device push channel.

    service_account_key holds the service account JSON, either raw or
    base64-encoded, usually supplied through FIREBASE_SERVICE_ACCOUNT_KEY.
    """
    enabled: bool = False
    project_id: Optional[str] = None
    service_account_key: Optional[str] = None
    app_name: str = "notification-push"

    # Android display defaults
    android_channel_id: str = "default_notifications"
    android_icon: str = "ic_notification"
    android_color: str = "#1E3A8A"

    def is_configured(self) -> bool:
        return bool(self.project_id and self.service_account_key)


class AppConfig(BaseModel):
    database: DatabaseConfig
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    socket: SocketConfig = Field(default_factory=SocketConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    push: PushConfig = Field(default_factory=PushConfig)


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the project root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Allow env var override for DB URL
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        if data.get('database') is None:
            data['database'] = {}
        data['database']['url'] = env_db_url

    # Allow env var override for Redis URL (socket relay)
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        if data.get('socket') is None:
            data['socket'] = {}
        data['socket']['redis_url'] = env_redis_url

    # SMTP settings usually come from secrets rather than the config file
    smtp_overrides = {
        'host': os.environ.get("SMTP_HOST"),
        'port': os.environ.get("SMTP_PORT"),
        'username': os.environ.get("SMTP_USER"),
        'password': os.environ.get("SMTP_PASS"),
        'from_email': os.environ.get("EMAIL_FROM"),
    }
    smtp_overrides = {k: v for k, v in smtp_overrides.items() if v}
    if smtp_overrides:
        if data.get('smtp') is None:
            data['smtp'] = {}
        data['smtp'].update(smtp_overrides)

    env_webhook_url = os.environ.get("NOTIFICATION_WEBHOOK_URL")
    if env_webhook_url:
        if data.get('webhook') is None:
            data['webhook'] = {}
        data['webhook']['url'] = env_webhook_url
        data['webhook']['enabled'] = True

    push_overrides = {
        'project_id': os.environ.get("FIREBASE_PROJECT_ID"),
        'service_account_key': os.environ.get("FIREBASE_SERVICE_ACCOUNT_KEY"),
    }
    push_overrides = {k: v for k, v in push_overrides.items() if v}
    if push_overrides:
        if data.get('push') is None:
            data['push'] = {}
        data['push'].update(push_overrides)
        data['push']['enabled'] = True

    return AppConfig(**data)

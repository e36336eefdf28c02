#!/usr/bin/env python3
"""
Notification Channel Providers

Each provider knows how to push one notification to one user over a single
transport. Providers are handed to the dispatcher at startup; adding a
transport means adding a ChannelProvider subclass, not touching the
dispatcher.

Contract:
- send() returns SendResult.SENT when the transport accepted the message
- send() returns SendResult.SKIPPED when the transport is unavailable
  (not configured, no address for the user); this is not a failure
- send() raises on hard failure; PermanentDeliveryError when retrying
  cannot help, RateLimitException when the transport asks us to back off

Usage:
    from notification.channels import SocketChannelProvider, EmailChannelProvider, PushChannelProvider

    providers = [
        SocketChannelProvider(registry),
        EmailChannelProvider(config.smtp, email_lookup),
        PushChannelProvider(config.push, token_lookup, token_remover),
    ]
"""

import base64
import enum
import ipaddress
import json
import logging
import smtplib
import socket
import threading
import urllib.parse
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import firebase_admin
import requests
from firebase_admin import credentials, messaging
from firebase_admin import exceptions as firebase_exceptions

from core.config_loader import AppConfig, PushConfig, SmtpConfig, WebhookConfig
from notification.connections import ConnectionRegistry
from notification.message_builder import NotificationMessageBuilder

logger = logging.getLogger(__name__)

EmailLookup = Callable[[str], Optional[str]]
TokenLookup = Callable[[str], Optional[str]]
TokenRemover = Callable[[str], Any]


class SendResult(str, enum.Enum):
    SENT = "sent"
    SKIPPED = "skipped"


class DeliveryError(Exception):
    """Transport failure worth retrying."""
    permanent = False


class PermanentDeliveryError(DeliveryError):
    """Transport failure that retrying cannot fix (bad recipient, rejected request)."""
    permanent = True


class RateLimitException(DeliveryError):
    """Raised when a transport rate-limits us."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


def _validate_webhook_url(url: str, allow_private: bool = False) -> bool:
    """
    Validate webhook URL to prevent SSRF attacks.

    Checks:
    - Scheme is http or https
    - Hostname resolves to public IP (not private/loopback)
    """
    parsed = urllib.parse.urlparse(url)

    if parsed.scheme not in ('http', 'https'):
        logger.error(f"Invalid URL scheme: {parsed.scheme}")
        return False

    if not parsed.hostname:
        logger.error("URL missing hostname")
        return False

    if allow_private:
        return True

    try:
        addrinfo = socket.getaddrinfo(parsed.hostname, None)
    except socket.gaierror:
        logger.error(f"Could not resolve hostname: {parsed.hostname}")
        return False

    for _, _, _, _, sockaddr in addrinfo:
        ip = ipaddress.ip_address(sockaddr[0])
        if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
            logger.error(f"URL resolves to private/reserved IP: {ip}")
            return False

    return True


class ChannelProvider(ABC):
    """
    Abstract base class for all channel providers.

    Any provider can be registered with the dispatcher interchangeably.
    """

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel identifier (matches outbox job channel lists)."""
        pass

    @abstractmethod
    def send(self, user_id: str, notification) -> SendResult:
        """
        Deliver a notification to a user through this channel.

        Args:
            user_id: Target user
            notification: Notification row (id, title, content, action fields)

        Returns:
            SendResult.SENT or SendResult.SKIPPED

        Raises:
            Exception on hard failure
        """
        pass


class SocketChannelProvider(ChannelProvider):
    """Real-time push to connected clients through a ConnectionRegistry."""

    def __init__(self, registry: Optional[ConnectionRegistry] = None, event_name: str = "notification:new"):
        self.registry = registry
        self.event_name = event_name

    @property
    def channel_type(self) -> str:
        return 'socket'

    def send(self, user_id: str, notification) -> SendResult:
        if self.registry is None:
            logger.warning("Socket registry not available in this process; skipping socket delivery")
            return SendResult.SKIPPED

        user_key = str(user_id)
        # Presence only feeds the log; an offline user is still emitted to and
        # the registry decides whether that is a no-op.
        online = self.registry.is_user_online(user_key)
        logger.info(f"Emitting {self.event_name} for notification {notification.id} to user {user_key} (online={online})")

        payload = NotificationMessageBuilder.build_wire_payload(notification)
        self.registry.emit_to_user(user_key, self.event_name, payload)
        return SendResult.SENT


class EmailChannelProvider(ChannelProvider):
    """Email notification channel via SMTP."""

    # Recipient-level rejections do not get better with time
    PERMANENT_SMTP_ERRORS = (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused)

    def __init__(self, smtp_config: Optional[SmtpConfig], email_lookup: EmailLookup):
        self.smtp_config = smtp_config or SmtpConfig()
        self.email_lookup = email_lookup

    @property
    def channel_type(self) -> str:
        return 'email'

    def validate_config(self) -> bool:
        return self.smtp_config.is_configured()

    def send(self, user_id: str, notification) -> SendResult:
        if not self.validate_config():
            logger.warning("Email not configured - SMTP settings missing; skipping")
            return SendResult.SKIPPED

        recipient = self.email_lookup(str(user_id))
        if not recipient:
            logger.info(f"No email address for user {user_id}; skipping")
            return SendResult.SKIPPED

        msg = NotificationMessageBuilder.build_email(notification, self.smtp_config.from_email, recipient)

        cfg = self.smtp_config
        implicit_tls = cfg.port == 465
        smtp_class = smtplib.SMTP_SSL if implicit_tls else smtplib.SMTP
        try:
            with smtp_class(cfg.host, cfg.port, timeout=cfg.timeout_seconds) as server:
                if not implicit_tls:
                    server.starttls()
                server.login(cfg.username, cfg.password)
                server.send_message(msg)
        except self.PERMANENT_SMTP_ERRORS as e:
            raise PermanentDeliveryError(f"SMTP rejected {_mask_email(recipient)}: {e.__class__.__name__}") from e

        logger.info(f"Email for notification {notification.id} sent to {_mask_email(recipient)}")
        return SendResult.SENT


class WebhookChannelProvider(ChannelProvider):
    """Generic webhook channel: POSTs the wire payload as JSON."""

    def __init__(self, webhook_config: Optional[WebhookConfig]):
        self.webhook_config = webhook_config or WebhookConfig()

    @property
    def channel_type(self) -> str:
        return 'webhook'

    def send(self, user_id: str, notification) -> SendResult:
        url = self.webhook_config.url
        if not url:
            logger.warning("Webhook URL not configured; skipping")
            return SendResult.SKIPPED

        if not _validate_webhook_url(url, allow_private=self.webhook_config.allow_private_hosts):
            raise PermanentDeliveryError(f"Invalid or unsafe webhook URL: {url}")

        payload = NotificationMessageBuilder.build_wire_payload(notification)
        payload['user_id'] = str(user_id)

        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'Notification-Outbox-Worker/1.0'
        }
        response = requests.post(url, json=payload, headers=headers, timeout=self.webhook_config.timeout_seconds)

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            raise RateLimitException(
                "Webhook rate limited",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if 400 <= response.status_code < 500:
            raise PermanentDeliveryError(f"Webhook rejected request: HTTP {response.status_code}")
        response.raise_for_status()

        parsed = urllib.parse.urlparse(url)
        logger.info(f"Webhook for notification {notification.id} sent to {parsed.scheme}://{parsed.hostname}{parsed.path}")
        return SendResult.SENT


def parse_service_account_key(raw: str) -> Dict[str, Any]:
    """
    Decode a Firebase service account key.

    Accepts the JSON document itself or its base64 encoding. Raises
    ValueError when neither parses.
    """
    raw = raw.strip()
    if not raw.startswith('{'):
        raw = base64.b64decode(raw).decode('utf-8')
    key = json.loads(raw)
    if not isinstance(key, dict):
        raise ValueError("service account key is not a JSON object")
    return key


class PushChannelProvider(ChannelProvider):
    """
    Per-device push through Firebase Cloud Messaging.

    Skips users without a registration token, and skips everything when
    Firebase is not configured or fails to initialize. A token Firebase
    reports as unregistered is cleared through token_remover so the next
    notification does not try it again.
    """

    # Token is dead for good; the app registers a new one on next launch
    STALE_TOKEN_ERRORS = (messaging.UnregisteredError, messaging.SenderIdMismatchError)

    def __init__(
        self,
        push_config: Optional[PushConfig],
        token_lookup: TokenLookup,
        token_remover: Optional[TokenRemover] = None,
        app: Optional[firebase_admin.App] = None
    ):
        self.push_config = push_config or PushConfig()
        self.token_lookup = token_lookup
        self.token_remover = token_remover
        self._app = app
        self._init_failed = False
        self._init_lock = threading.Lock()

    @property
    def channel_type(self) -> str:
        return 'push'

    def _get_app(self) -> Optional[firebase_admin.App]:
        if self._app is not None:
            return self._app
        if self._init_failed or not self.push_config.is_configured():
            return None

        with self._init_lock:
            if self._app is not None:
                return self._app
            cfg = self.push_config
            try:
                self._app = firebase_admin.get_app(cfg.app_name)
                return self._app
            except ValueError:
                pass

            try:
                cert = credentials.Certificate(parse_service_account_key(cfg.service_account_key))
                self._app = firebase_admin.initialize_app(cert, {'projectId': cfg.project_id}, name=cfg.app_name)
            except (ValueError, OSError) as e:
                self._init_failed = True
                logger.error(f"Firebase initialization failed; push disabled: {e}")
                return None

            logger.info(f"Firebase initialized for project {cfg.project_id}")
            return self._app

    def send(self, user_id: str, notification) -> SendResult:
        app = self._get_app()
        if app is None:
            logger.warning("Firebase not configured; skipping push delivery")
            return SendResult.SKIPPED

        token = self.token_lookup(str(user_id))
        if not token:
            logger.info(f"No FCM token for user {user_id}; skipping")
            return SendResult.SKIPPED

        cfg = self.push_config
        message = NotificationMessageBuilder.build_push_message(
            notification,
            token,
            android_channel_id=cfg.android_channel_id,
            android_icon=cfg.android_icon,
            android_color=cfg.android_color
        )

        try:
            message_id = messaging.send(message, app=app)
        except self.STALE_TOKEN_ERRORS as e:
            logger.warning(f"FCM token for user {user_id} is no longer valid ({e.code}); removing it")
            if self.token_remover is not None:
                self.token_remover(str(user_id))
            return SendResult.SKIPPED
        except firebase_exceptions.ResourceExhaustedError as e:
            retry_after = None
            if e.http_response is not None:
                header = e.http_response.headers.get('Retry-After')
                retry_after = int(header) if header and header.isdigit() else None
            raise RateLimitException("FCM quota exceeded", retry_after=retry_after) from e
        except firebase_exceptions.InvalidArgumentError as e:
            raise PermanentDeliveryError(f"FCM rejected message for user {user_id}: {e}") from e

        logger.info(f"Push for notification {notification.id} sent to user {user_id}: {message_id}")
        return SendResult.SENT


def build_providers(
    config: AppConfig,
    registry: Optional[ConnectionRegistry],
    email_lookup: EmailLookup,
    push_token_lookup: Optional[TokenLookup] = None,
    push_token_remover: Optional[TokenRemover] = None
) -> List[ChannelProvider]:
    """Assemble the providers enabled by configuration."""
    providers: List[ChannelProvider] = []
    if config.socket.enabled:
        providers.append(SocketChannelProvider(registry, event_name=config.socket.event_name))
    providers.append(EmailChannelProvider(config.smtp, email_lookup))
    if config.webhook.enabled:
        providers.append(WebhookChannelProvider(config.webhook))
    if config.push.enabled and push_token_lookup is not None:
        providers.append(PushChannelProvider(config.push, push_token_lookup, push_token_remover))
    logger.info(f"Channel providers: {', '.join(p.channel_type for p in providers)}")
    return providers

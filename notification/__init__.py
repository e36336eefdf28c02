"""
Notification Module

Reliable multi-channel delivery of notifications: a durable outbox drained
by lease-based workers, a dispatcher that fans each job out across channel
providers, and a per-channel delivery ledger.

Usage:
    from notification import NotificationDispatcher, SocketChannelProvider, EmailChannelProvider

    dispatcher = NotificationDispatcher([
        SocketChannelProvider(registry),
        EmailChannelProvider(config.smtp, email_lookup),
    ])

    # Queue a notification for delivery
    dispatcher.enqueue(notification.id, [user_id], ['socket', 'email'])

    # Drain the outbox
    from notification.worker import OutboxWorker
    worker = OutboxWorker(dispatcher)
    worker.run_forever()
"""

from notification.channels import (
    ChannelProvider,
    SocketChannelProvider,
    EmailChannelProvider,
    WebhookChannelProvider,
    PushChannelProvider,
    SendResult,
    DeliveryError,
    PermanentDeliveryError,
    RateLimitException,
    build_providers,
)

from notification.connections import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    RedisConnectionRegistry,
)

from notification.dispatcher import (
    NotificationDispatcher,
    DispatchResult,
    ChannelError,
)

from notification.message_builder import (
    NotificationMessageBuilder,
    NotificationContent,
)

__all__ = [
    # Channels
    'ChannelProvider',
    'SocketChannelProvider',
    'EmailChannelProvider',
    'WebhookChannelProvider',
    'PushChannelProvider',
    'SendResult',
    'DeliveryError',
    'PermanentDeliveryError',
    'RateLimitException',
    'build_providers',
    # Connections
    'ConnectionRegistry',
    'InMemoryConnectionRegistry',
    'RedisConnectionRegistry',
    # Dispatch
    'NotificationDispatcher',
    'DispatchResult',
    'ChannelError',
    # Messages
    'NotificationMessageBuilder',
    'NotificationContent',
]

import html
import json
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from firebase_admin import messaging
from pydantic import BaseModel


class NotificationContent(BaseModel):
    """Channel-agnostic view of a notification, as sent over the wire."""
    id: str
    title: str
    content: str
    notification_type: Optional[str] = None
    priority: Optional[str] = None
    action_url: Optional[str] = None
    action_data: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    created_at: Optional[str] = None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class NotificationMessageBuilder:
    @staticmethod
    def to_content(notification) -> NotificationContent:
        """Map a Notification row (or anything with the same attributes) to wire content."""
        return NotificationContent(
            id=str(notification.id),
            title=notification.title,
            content=notification.content,
            notification_type=getattr(notification, 'notification_type', None),
            priority=getattr(notification, 'priority', None),
            action_url=getattr(notification, 'action_url', None),
            action_data=getattr(notification, 'action_data', None),
            image_url=getattr(notification, 'image_url', None),
            created_at=_isoformat(getattr(notification, 'created_at', None)),
        )

    @staticmethod
    def build_wire_payload(notification, action: str = 'created') -> Dict[str, Any]:
        """Payload pushed to connected clients and webhooks."""
        return {
            'notification': NotificationMessageBuilder.to_content(notification).model_dump(),
            'action': action,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def build_html_body(notification) -> str:
        """Minimal HTML rendering; all notification text is escaped."""
        title = html.escape(notification.title or '')
        content = html.escape(notification.content or '').replace('\n', '<br>')
        body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h2>{title}</h2>
    <p>{content}</p>
"""
        action_url = getattr(notification, 'action_url', None)
        if action_url and action_url.startswith(('http://', 'https://')):
            body += f'    <p><a href="{html.escape(action_url, quote=True)}">Open</a></p>\n'
        body += "</body>\n</html>"
        return body

    @staticmethod
    def build_email(notification, sender: str, recipient: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['From'] = sender
        msg['To'] = recipient
        msg['Subject'] = notification.title
        msg.attach(MIMEText(notification.content or '', 'plain', 'utf-8'))
        msg.attach(MIMEText(NotificationMessageBuilder.build_html_body(notification), 'html', 'utf-8'))
        return msg

    @staticmethod
    def build_push_data(notification) -> Dict[str, str]:
        """FCM data payload. FCM only carries string values."""
        content = NotificationMessageBuilder.to_content(notification)
        return {
            'notificationId': content.id,
            'notificationType': content.notification_type or '',
            'priority': content.priority or '',
            'actionUrl': content.action_url or '',
            'actionData': json.dumps(content.action_data or {}),
            'createdAt': content.created_at or '',
        }

    @staticmethod
    def build_push_message(
        notification,
        token: str,
        android_channel_id: str = "default_notifications",
        android_icon: str = "ic_notification",
        android_color: str = "#1E3A8A"
    ) -> messaging.Message:
        title = notification.title or ''
        body = notification.content or ''
        return messaging.Message(
            token=token,
            notification=messaging.Notification(
                title=title,
                body=body,
                image=getattr(notification, 'image_url', None)
            ),
            data=NotificationMessageBuilder.build_push_data(notification),
            android=messaging.AndroidConfig(
                priority='high',
                data={'click_action': 'FLUTTER_NOTIFICATION_CLICK'},
                notification=messaging.AndroidNotification(
                    icon=android_icon,
                    color=android_color,
                    channel_id=android_channel_id,
                    priority='high',
                    default_sound=True
                )
            ),
            apns=messaging.APNSConfig(
                headers={'apns-priority': '10', 'apns-push-type': 'alert'},
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        alert=messaging.ApsAlert(title=title, body=body),
                        badge=1,
                        sound='default',
                        content_available=True
                    )
                )
            )
        )

"""
Notification services for the ParkStay bot

NotificationService creates the in-app record, which is authoritative,
and then hands the message to NotificationDispatcher, which fans it out
to every enabled external provider and keeps a delivery log per attempt.
"""
import asyncio
import html
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional, List, Dict, Tuple
import httpx
from rich.console import Console
from rich.panel import Panel

from .errors import ConfigurationError, EntityNotFoundError
from .events import EventBus, NotificationCreatedEvent
from .models import (
    BookingResult,
    CampsiteAvailability,
    DeliveryResult,
    DeliveryStatus,
    DesktopConfig,
    Notification,
    NotificationChannel,
    NotificationDeliveryLog,
    NotificationMessage,
    NotificationProviderRecord,
    NotificationType,
    ProviderConfig,
    ProviderStatus,
    RelatedType,
    SkipTheQueueEntry,
    SMTPConfig,
    Watch,
    WebhookConfig,
)
from .timing import RetryStrategy, utcnow

logger = logging.getLogger(__name__)

DISPLAY_NAMES = {
    NotificationChannel.DESKTOP: "Desktop",
    NotificationChannel.EMAIL_SMTP: "Email (SMTP)",
    NotificationChannel.WEBHOOK: "Webhook",
}


# ============================================================
# PROVIDERS
# ============================================================

class NotificationProvider(ABC):
    """Base class for notification providers"""

    channel: NotificationChannel

    def validate(self) -> List[str]:
        """Return a list of configuration problems, empty if usable"""
        return []

    @abstractmethod
    async def send(self, message: NotificationMessage) -> DeliveryResult:
        """Send a message, never raises for delivery failures"""
        pass

    async def close(self):
        pass


class DesktopNotifier(NotificationProvider):
    """Console panel on the machine running the bot"""

    channel = NotificationChannel.DESKTOP

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        body = message.message
        if message.action_url:
            body += f"\n\n🔗 {message.action_url}"
        style = "red" if message.priority == "high" else "green"
        self.console.print(Panel(body, title=message.title, style=style))
        return DeliveryResult(success=True)


class SMTPEmailNotifier(NotificationProvider):
    """Email via any SMTP server (Gmail, Outlook or custom)"""

    channel = NotificationChannel.EMAIL_SMTP

    def __init__(self, config: SMTPConfig, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout

    def validate(self) -> List[str]:
        errors = []
        if not self.config.host:
            errors.append("SMTP host is required")
        if not 0 < self.config.port < 65536:
            errors.append("SMTP port must be between 1 and 65535")
        if not self.config.auth.user:
            errors.append("SMTP username is required")
        if not self.config.auth.password:
            errors.append("SMTP password is required")
        if not self.config.recipient or "@" not in self.config.recipient:
            errors.append("A valid recipient address is required")
        return errors

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        email = self._build_email(message)
        try:
            await asyncio.to_thread(self._send_sync, email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return DeliveryResult(success=False, error=f"Authentication failed: {e}")
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError) as e:
            logger.warning(f"SMTP connection problem: {e}")
            return DeliveryResult(success=False, error=str(e), transient=True)
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return DeliveryResult(success=False, error=str(e))
        except OSError as e:
            logger.warning(f"SMTP network error: {e}")
            return DeliveryResult(success=False, error=str(e), transient=True)

        return DeliveryResult(success=True, message_id=email["Message-ID"])

    def _send_sync(self, email: MIMEMultipart):
        if self.config.secure:
            server = smtplib.SMTP_SSL(
                self.config.host, self.config.port,
                timeout=self.timeout, context=ssl.create_default_context()
            )
        else:
            server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.timeout)
        with server:
            if not self.config.secure:
                server.starttls(context=ssl.create_default_context())
            server.login(self.config.auth.user, self.config.auth.password)
            server.send_message(email)

    def _build_email(self, message: NotificationMessage) -> MIMEMultipart:
        email = MIMEMultipart("alternative")
        email["From"] = f"ParkStay Bot <{self.config.sender}>"
        email["To"] = self.config.recipient
        email["Subject"] = message.title
        email["Message-ID"] = make_msgid(domain="parkstay-bot.local")
        email.attach(MIMEText(self._format_text(message), "plain"))
        email.attach(MIMEText(self._format_html(message), "html"))
        return email

    def _format_text(self, message: NotificationMessage) -> str:
        text = f"{message.title}\n\n{message.message}"
        if message.campground_name:
            text += f"\n\nCampground: {message.campground_name}"
        if message.action_url:
            text += f"\n\n{message.action_url}"
        return text

    def _format_html(self, message: NotificationMessage) -> str:
        colour = "#ef4444" if message.priority == "high" or message.type == "error" else "#22c55e"
        body = f"""
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h1 style="color: {colour};">{html.escape(message.title)}</h1>
            <p style="font-size: 16px;">{html.escape(message.message)}</p>
        """
        if message.campground_name:
            body += f'<p style="color: #666;">Campground: {html.escape(message.campground_name)}</p>'
        if message.action_url:
            body += f"""
            <p style="margin-top: 20px;">
                <a href="{html.escape(message.action_url)}"
                   style="background: #2563eb; color: white; padding: 12px 24px;
                          text-decoration: none; border-radius: 6px; font-weight: bold;">
                    Open →
                </a>
            </p>
            """
        body += """
        </body>
        </html>
        """
        return body


class WebhookNotifier(NotificationProvider):
    """Generic webhook notifications (Slack, Discord, etc.)"""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, config: WebhookConfig, timeout: float = 30.0):
        self.config = config
        self.client = httpx.AsyncClient(timeout=timeout)

    def validate(self) -> List[str]:
        if not self.config.url.startswith(("http://", "https://")):
            return ["Webhook URL must start with http:// or https://"]
        return []

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        try:
            # Format for Slack-compatible webhooks
            response = await self.client.post(
                self.config.url,
                json={
                    "text": message.title,
                    "blocks": [
                        {
                            "type": "header",
                            "text": {"type": "plain_text", "text": message.title}
                        },
                        {
                            "type": "section",
                            "text": {"type": "mrkdwn", "text": message.message}
                        },
                        *([{
                            "type": "section",
                            "text": {
                                "type": "mrkdwn",
                                "text": f"<{message.action_url}|Open →>"
                            }
                        }] if message.action_url else [])
                    ]
                }
            )
        except httpx.TransportError as e:
            logger.warning(f"Webhook transport error: {e}")
            return DeliveryResult(success=False, error=str(e), transient=True)

        if 200 <= response.status_code < 300:
            return DeliveryResult(success=True)

        transient = response.status_code >= 500 or response.status_code == 429
        logger.error(f"Webhook send failed: {response.status_code} - {response.text}")
        return DeliveryResult(
            success=False,
            error=f"HTTP {response.status_code}",
            transient=transient
        )

    async def close(self):
        await self.client.aclose()


def build_provider(config: ProviderConfig, console: Optional[Console] = None) -> NotificationProvider:
    """Instantiate the provider for a channel configuration"""
    if isinstance(config, DesktopConfig):
        return DesktopNotifier(console)
    if isinstance(config, SMTPConfig):
        return SMTPEmailNotifier(config)
    if isinstance(config, WebhookConfig):
        return WebhookNotifier(config)
    raise ConfigurationError(f"Unknown notification channel: {config!r}")


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """
    Fans a message out to every enabled provider.

    Each provider is validated before sending. Every send attempt is
    recorded as a NotificationDeliveryLog row. A provider whose failure is
    transient gets exactly one retry.
    """

    def __init__(self, storage, retry_delay_ms: int = 1000, console: Optional[Console] = None):
        self.storage = storage
        self.retry_delay_ms = retry_delay_ms
        self.console = console
        self._providers: Dict[NotificationChannel, Tuple[ProviderConfig, NotificationProvider]] = {}

    def get_provider(self, record: NotificationProviderRecord) -> NotificationProvider:
        """Provider instance for a record, rebuilt when its config changes"""
        cached = self._providers.get(record.channel)
        if cached and cached[0] == record.config:
            return cached[1]
        provider = build_provider(record.config, self.console)
        self._providers[record.channel] = (record.config, provider)
        return provider

    def sync_from_config(self, config) -> List[NotificationProviderRecord]:
        """Create or update provider records from the notifications config section"""
        wanted: List[ProviderConfig] = list(config.providers)
        if config.desktop_enabled and not any(isinstance(c, DesktopConfig) for c in wanted):
            wanted.insert(0, DesktopConfig())

        records = []
        for provider_config in wanted:
            records.append(self.configure(NotificationChannel(provider_config.channel), provider_config, enabled=True))
        return records

    def configure(
        self,
        channel: NotificationChannel,
        config: ProviderConfig,
        enabled: bool = True,
        events: Optional[List[str]] = None,
    ) -> NotificationProviderRecord:
        """Store a provider's configuration, validating it first"""
        channel = NotificationChannel(channel)
        if config.channel != channel.value:
            raise ConfigurationError(f"Config for {config.channel} given for channel {channel.value}")

        provider = build_provider(config, self.console)
        self._providers[channel] = (config, provider)
        errors = provider.validate()
        status = ProviderStatus.ERROR if errors else ProviderStatus.CONFIGURED
        last_error = "; ".join(errors) if errors else None

        existing = self.storage.get_provider(channel)
        if existing is None:
            record = self.storage.add_provider(NotificationProviderRecord(
                channel=channel,
                display_name=DISPLAY_NAMES[channel],
                enabled=enabled,
                config=config,
                events=events or [],
                status=status,
                last_error=last_error,
            ))
        else:
            fields = dict(config=config, enabled=enabled, status=status, last_error=last_error)
            if events is not None:
                fields["events"] = events
            record = self.storage.update_provider(existing.id, **fields)

        logger.info(f"Provider {channel.value} configured (enabled={enabled}, status={status.value})")
        return record

    async def dispatch(
        self,
        message: NotificationMessage,
        event_type: Optional[str] = None,
        notification_id: Optional[int] = None,
    ) -> Dict[NotificationChannel, DeliveryResult]:
        """Send through every enabled provider that accepts the event type"""
        records = [
            r for r in self.storage.list_providers()
            if r.enabled and r.accepts(event_type)
        ]
        if not records:
            logger.debug("No enabled notification providers")
            return {}

        results = await asyncio.gather(
            *[self._deliver(r, message, notification_id) for r in records]
        )

        success_count = sum(1 for r in results if r.success)
        logger.info(f"Notifications sent: {success_count}/{len(records)} successful")
        return {record.channel: result for record, result in zip(records, results)}

    async def _deliver(
        self,
        record: NotificationProviderRecord,
        message: NotificationMessage,
        notification_id: Optional[int],
    ) -> DeliveryResult:
        provider = self.get_provider(record)

        errors = provider.validate()
        if errors:
            error = f"Configuration invalid: {', '.join(errors)}"
            logger.warning(f"Provider {record.channel.value} validation failed: {errors}")
            self._log_delivery(record.channel, notification_id, DeliveryResult(success=False, error=error), 1)
            self.storage.update_provider(record.id, status=ProviderStatus.ERROR, last_error=error)
            return DeliveryResult(success=False, error=error)

        strategy = RetryStrategy(max_attempts=2, base_delay_ms=self.retry_delay_ms)
        while True:
            strategy.record_attempt()
            try:
                result = await provider.send(message)
            except Exception as e:
                logger.error(f"Error dispatching notification via {record.channel.value}: {e}")
                result = DeliveryResult(success=False, error=str(e) or type(e).__name__)

            self._log_delivery(record.channel, notification_id, result, strategy.attempts)

            if result.success:
                logger.info(f"Notification sent via {record.channel.value}")
                return result
            if not result.transient or not strategy.should_retry():
                break
            logger.warning(f"Transient failure via {record.channel.value}, retrying once: {result.error}")
            await strategy.wait()

        logger.error(f"Failed to send notification via {record.channel.value}: {result.error}")
        self.storage.update_provider(record.id, last_error=result.error)
        return result

    def _log_delivery(
        self,
        channel: NotificationChannel,
        notification_id: Optional[int],
        result: DeliveryResult,
        attempt: int,
    ):
        self.storage.add_delivery_log(NotificationDeliveryLog(
            notification_id=notification_id,
            provider_channel=channel,
            status=DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
            attempt=attempt,
            message_id=result.message_id,
            error_message=result.error,
            sent_at=utcnow() if result.success else None,
        ))

    async def test_provider(self, channel: NotificationChannel) -> DeliveryResult:
        """Send a test message through one provider and record the outcome"""
        channel = NotificationChannel(channel)
        record = self.storage.get_provider(channel)
        if record is None:
            raise EntityNotFoundError(f"Provider not configured: {channel.value}")

        provider = self.get_provider(record)
        errors = provider.validate()
        if errors:
            result = DeliveryResult(success=False, error=f"Configuration invalid: {', '.join(errors)}")
        else:
            result = await provider.send(NotificationMessage(
                title="ParkStay Bot test notification",
                message=f"Your {record.display_name} notifications are working.",
                type=NotificationType.INFO.value,
            ))

        self.storage.update_provider(
            record.id,
            status=ProviderStatus.CONFIGURED if result.success else ProviderStatus.ERROR,
            last_tested_at=utcnow(),
            last_error=result.error,
        )
        return result

    async def close(self):
        for _, provider in self._providers.values():
            await provider.close()
        self._providers.clear()


# ============================================================
# SERVICE
# ============================================================

class NotificationService:
    """Creates in-app notifications and dispatches them externally"""

    def __init__(
        self,
        storage,
        dispatcher: Optional[NotificationDispatcher] = None,
        events: Optional[EventBus] = None,
        user_id: int = 1,
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.events = events
        self.user_id = user_id

    async def notify(
        self,
        type: NotificationType,
        title: str,
        message: str,
        related_id: Optional[int] = None,
        related_type: Optional[RelatedType] = None,
        action_url: Optional[str] = None,
        priority: str = "normal",
        campground_name: Optional[str] = None,
    ) -> Notification:
        """
        Create the in-app notification, then fan it out.

        The stored record exists even when every external delivery fails.
        Delivery errors are logged and never raised.
        """
        notification = self.storage.add_notification(Notification(
            user_id=self.user_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            related_id=related_id,
            related_type=related_type,
            action_url=action_url,
        ))

        if self.events:
            self.events.publish(NotificationCreatedEvent(notification=notification))

        if self.dispatcher:
            try:
                await self.dispatcher.dispatch(
                    NotificationMessage(
                        title=title,
                        message=message,
                        action_url=action_url,
                        type=type.value,
                        priority=priority,
                        campground_name=campground_name,
                    ),
                    event_type=type.value,
                    notification_id=notification.id,
                )
            except Exception as e:
                logger.error(f"Error dispatching notification to providers: {e}")

        return notification

    # ========================================
    # Domain helpers
    # ========================================

    async def notify_watch_found(self, watch: Watch, sites: List[CampsiteAvailability]) -> Notification:
        sites_text = "1 site" if len(sites) == 1 else f"{len(sites)} sites"
        where = watch.campground_name or f"campground {watch.campground_id}"
        return await self.notify(
            NotificationType.WATCH_FOUND,
            "Availability Found!",
            f"Found {sites_text} available at {where} for "
            f"{watch.arrival_date:%d/%m/%Y} - {watch.departure_date:%d/%m/%Y}",
            related_id=watch.id,
            related_type=RelatedType.WATCH,
            action_url=f"/watches/{watch.id}",
            campground_name=watch.campground_name or None,
        )

    async def notify_booking_confirmed(
        self,
        watch: Watch,
        booking: BookingResult,
        site: CampsiteAvailability,
    ) -> Notification:
        return await self.notify(
            NotificationType.BOOKING_CONFIRMED,
            "Booking Confirmed",
            f"Your booking {booking.reference} for site {site.site_name} has been confirmed "
            f"({watch.arrival_date:%d/%m/%Y} - {watch.departure_date:%d/%m/%Y}).",
            related_id=watch.id,
            related_type=RelatedType.WATCH,
            action_url=booking.payment_url,
            campground_name=watch.campground_name or None,
        )

    async def notify_booking_failed(self, watch: Watch, reason: str) -> Notification:
        return await self.notify(
            NotificationType.ERROR,
            "Automatic Booking Failed",
            f"Availability was found for {watch.name} but booking failed: {reason}. "
            f"The watch is still active.",
            related_id=watch.id,
            related_type=RelatedType.WATCH,
            action_url=f"/watches/{watch.id}",
        )

    async def notify_stq_success(self, entry: SkipTheQueueEntry, old_reference: str) -> Notification:
        return await self.notify(
            NotificationType.STQ_SUCCESS,
            "Rebooking Successful!",
            f"Successfully rebooked {old_reference}. "
            f"New booking reference: {entry.new_booking_reference} "
            f"(departing {entry.departure_date:%d/%m/%Y}).",
            related_id=entry.id,
            related_type=RelatedType.STQ,
            action_url=f"/stq/{entry.id}",
        )

    async def notify_stq_exhausted(self, entry: SkipTheQueueEntry) -> Notification:
        return await self.notify(
            NotificationType.WARNING,
            "Beat the Crowd Stopped",
            f"No longer stay was found for booking {entry.booking_reference} "
            f"after {entry.attempts_count} attempts.",
            related_id=entry.id,
            related_type=RelatedType.STQ,
            action_url=f"/stq/{entry.id}",
        )

    async def notify_anomaly(self, entry: SkipTheQueueEntry, details: str) -> Notification:
        return await self.notify(
            NotificationType.ERROR,
            "Action Required: Two Bookings Held",
            details,
            related_id=entry.id,
            related_type=RelatedType.STQ,
            action_url=f"/stq/{entry.id}",
            priority="high",
        )

    async def notify_auth_required(
        self,
        related_id: Optional[int] = None,
        related_type: Optional[RelatedType] = None,
    ) -> Notification:
        return await self.notify(
            NotificationType.ERROR,
            "ParkStay Login Required",
            "ParkStay rejected the saved session. Log in again and refresh the "
            "session cookies; affected jobs are paused until then.",
            related_id=related_id,
            related_type=related_type,
            priority="high",
        )

    async def notify_error(
        self,
        context: str,
        error: BaseException | str,
        related_id: Optional[int] = None,
        related_type: Optional[RelatedType] = None,
    ) -> Notification:
        return await self.notify(
            NotificationType.ERROR,
            "Error",
            f"{context}: {error}",
            related_id=related_id,
            related_type=related_type,
        )

    async def notify_info(self, title: str, message: str) -> Notification:
        return await self.notify(NotificationType.INFO, title, message)

    # ========================================
    # In-app records
    # ========================================

    def list(self, unread_only: bool = False, limit: Optional[int] = None) -> List[Notification]:
        return self.storage.list_notifications(unread_only=unread_only, limit=limit)

    def unread_count(self) -> int:
        return len(self.storage.list_notifications(unread_only=True))

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.storage.update_notification(notification_id, is_read=True)
        if notification is None:
            raise EntityNotFoundError(f"Notification {notification_id} not found")
        return notification

    def mark_all_read(self) -> int:
        unread = self.storage.list_notifications(unread_only=True)
        for notification in unread:
            self.storage.update_notification(notification.id, is_read=True)
        return len(unread)

    def delete(self, notification_id: int) -> bool:
        if not self.storage.delete_notification(notification_id):
            raise EntityNotFoundError(f"Notification {notification_id} not found")
        return True

    def prune(self, retention_days: int = 30) -> int:
        """Delete notifications older than the retention period"""
        return self.storage.prune_notifications(utcnow() - timedelta(days=retention_days))

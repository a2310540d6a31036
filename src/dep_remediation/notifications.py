"""Security alert fan-out to mail, push and chat-webhook channels."""

import asyncio
import html
import logging
import os
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Mapping, Optional

import aiosmtplib
import httpx
from pydantic import BaseModel, Field

from .errors import ConfigurationError, NotificationFailure
from .models import Alert, AlertVulnerability, DeliveryResult, Severity

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 10.0
SMTP_TIMEOUT = 30.0

QUICK_ACTIONS = [
    "dep-remediation --scan --check-outdated",
    "dep-remediation --interactive",
    "dep-remediation --auto-update",
]


def _flag(environ: Mapping[str, str], key: str, default: bool) -> bool:
    value = environ.get(key)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


class NotificationConfig(BaseModel):
    """Channel toggles and credentials, read from SECURITY_* environment variables."""

    email_enabled: bool = True
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: str = "security@localhost"
    admin_email: str = "admin@localhost"
    team_emails: list[str] = Field(default_factory=list)
    push_enabled: bool = False
    push_url: Optional[str] = None
    slack_enabled: bool = False
    slack_webhook: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NotificationConfig":
        env = os.environ if environ is None else environ
        try:
            port = int(env.get("SECURITY_EMAIL_SMTP_PORT") or 587)
        except ValueError:
            logger.warning("SECURITY_EMAIL_SMTP_PORT is not a number, using 587")
            port = 587

        return cls(
            email_enabled=_flag(env, "SECURITY_EMAIL_ENABLED", True),
            smtp_host=env.get("SECURITY_EMAIL_SMTP_HOST") or "smtp.gmail.com",
            smtp_port=port,
            smtp_user=env.get("SECURITY_EMAIL_USER") or None,
            smtp_password=env.get("SECURITY_EMAIL_PASS") or None,
            email_from=env.get("SECURITY_EMAIL_FROM") or "security@localhost",
            admin_email=env.get("SECURITY_ADMIN_EMAIL") or "admin@localhost",
            team_emails=[e.strip() for e in (env.get("SECURITY_TEAM_EMAILS") or "").split(",") if e.strip()],
            push_enabled=_flag(env, "SECURITY_PUSH_ENABLED", False),
            push_url=env.get("SECURITY_PUSH_URL") or None,
            slack_enabled=_flag(env, "SECURITY_SLACK_ENABLED", False),
            slack_webhook=env.get("SECURITY_SLACK_WEBHOOK") or None,
        )

    def recipients_for(self, severity: Severity) -> list[str]:
        """Critical alerts go to the whole team; everything else only to the admin."""
        if severity == Severity.CRITICAL:
            recipients = [self.admin_email, *self.team_emails]
            return list(dict.fromkeys(recipients))
        return [self.admin_email]


class NotificationChannel(ABC):
    """A delivery channel. send() raises NotificationFailure on any error."""

    name = "channel"

    @abstractmethod
    async def send(self, alert: Alert, recipients: list[str]) -> None:
        ...


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, config: NotificationConfig):
        self.config = config

    def build_message(self, alert: Alert, recipients: list[str]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.config.email_from
        message["To"] = ", ".join(recipients)
        message["Subject"] = f"[{alert.severity.value.upper()}] Security Alert: {alert.title}"
        message.set_content(render_text(alert))
        message.add_alternative(render_html(alert), subtype="html")
        return message

    async def send(self, alert: Alert, recipients: list[str]) -> None:
        message = self.build_message(alert, recipients)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                username=self.config.smtp_user,
                password=self.config.smtp_password,
                start_tls=True,
                timeout=SMTP_TIMEOUT,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotificationFailure(self.name, str(e))
        logger.info(f"Email sent to {len(recipients)} recipients")


class PushChannel(NotificationChannel):
    name = "push"

    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.transport = transport

    async def send(self, alert: Alert, recipients: list[str]) -> None:
        payload = {
            "title": f"Security Alert: {alert.title}",
            "message": f"{alert.severity.value.upper()} security issue detected",
            "priority": "urgent" if alert.severity == Severity.CRITICAL else "high",
        }
        await _post_json(self.name, self.url, payload, self.transport)
        logger.info("Push notification sent")


class SlackChannel(NotificationChannel):
    name = "slack"

    def __init__(self, webhook_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self.transport = transport

    @staticmethod
    def build_payload(alert: Alert) -> dict:
        critical = alert.severity == Severity.CRITICAL
        return {
            "username": "Security Manager",
            "icon_emoji": ":shield:",
            "attachments": [
                {
                    "color": "danger" if critical else "warning",
                    "title": f"Security Alert: {alert.title}",
                    "text": alert.description,
                    "fields": [
                        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                        {"title": "Vulnerabilities", "value": str(len(alert.vulnerabilities)), "short": True},
                    ],
                    "footer": "Dependency Security Manager",
                    "ts": int(alert.timestamp.timestamp()),
                }
            ],
        }

    async def send(self, alert: Alert, recipients: list[str]) -> None:
        await _post_json(self.name, self.webhook_url, self.build_payload(alert), self.transport)
        logger.info("Slack notification sent")


async def _post_json(
    channel: str,
    url: str,
    payload: dict,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport) as client:
            response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        raise NotificationFailure(channel, str(e))
    if response.status_code >= 400:
        raise NotificationFailure(channel, f"HTTP {response.status_code}")


def render_text(alert: Alert) -> str:
    lines = [
        f"Security Alert ({alert.severity.value.upper()})",
        f"Time: {alert.timestamp.isoformat()}",
        "",
        alert.title,
        alert.description,
    ]
    if alert.vulnerabilities:
        lines += ["", "Vulnerabilities found:"]
        lines += [f"  - {v.package}: {v.severity.value} - {v.title}" for v in alert.vulnerabilities]
    if alert.actions:
        lines += ["", "Recommended actions:"]
        lines += [f"  - {action}" for action in alert.actions]
    lines += ["", "Quick actions:"] + [f"  {command}" for command in QUICK_ACTIONS]
    return "\n".join(lines) + "\n"


def render_html(alert: Alert) -> str:
    esc = html.escape
    critical = alert.severity == Severity.CRITICAL
    parts = [
        "<html><body style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">",
        f"<h1 style=\"color: {'#c53030' if critical else '#d69e2e'};\">Security Alert</h1>",
        f"<p><strong>Severity:</strong> {esc(alert.severity.value.upper())}</p>",
        f"<p><strong>Time:</strong> {esc(alert.timestamp.isoformat())}</p>",
        f"<h2>{esc(alert.title)}</h2>",
        f"<p>{esc(alert.description)}</p>",
    ]
    if alert.vulnerabilities:
        parts.append("<h3>Vulnerabilities Found:</h3><ul>")
        parts += [
            f"<li><strong>{esc(v.package)}</strong>: {esc(v.severity.value)} - {esc(v.title)}</li>"
            for v in alert.vulnerabilities
        ]
        parts.append("</ul>")
    if alert.actions:
        parts.append("<h3>Recommended Actions:</h3><ul>")
        parts += [f"<li>{esc(action)}</li>" for action in alert.actions]
        parts.append("</ul>")
    parts.append("<h4>Quick Actions:</h4><code>" + "<br>".join(esc(c) for c in QUICK_ACTIONS) + "</code>")
    parts.append("</body></html>")
    return "\n".join(parts)


def build_channels(
    config: NotificationConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[NotificationChannel]:
    """
    Create the enabled channels.

    A channel that is enabled but missing credentials is left out with a
    warning instead of failing the process.
    """
    channels: list[NotificationChannel] = []

    def _require(channel: str, **values: Optional[str]) -> None:
        missing = [key for key, value in values.items() if not value]
        if missing:
            raise ConfigurationError(f"{channel} enabled but missing: {', '.join(missing)}")

    candidates = [
        (config.email_enabled, "email",
         lambda: _require("email", smtp_user=config.smtp_user, smtp_password=config.smtp_password),
         lambda: EmailChannel(config)),
        (config.push_enabled, "push",
         lambda: _require("push", push_url=config.push_url),
         lambda: PushChannel(config.push_url, transport)),
        (config.slack_enabled, "slack",
         lambda: _require("slack", slack_webhook=config.slack_webhook),
         lambda: SlackChannel(config.slack_webhook, transport)),
    ]

    for enabled, name, validate, factory in candidates:
        if not enabled:
            logger.info(f"{name} notifications disabled")
            continue
        try:
            validate()
        except ConfigurationError as e:
            logger.warning(f"ConfigurationError: {e}; {name} notifications disabled")
            continue
        channels.append(factory())
    return channels


class NotificationDispatcher:
    """Delivers alerts to every enabled channel concurrently, best effort."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        channels: Optional[list[NotificationChannel]] = None,
    ):
        self.config = config or NotificationConfig.from_env()
        self.channels = channels if channels is not None else build_channels(self.config)

    def status(self) -> dict[str, bool]:
        enabled = {channel.name for channel in self.channels}
        return {name: name in enabled for name in ("email", "push", "slack")}

    async def _deliver(self, channel: NotificationChannel, alert: Alert, recipients: list[str]) -> DeliveryResult:
        try:
            await channel.send(alert, recipients)
        except NotificationFailure as e:
            logger.error(f"NotificationFailure: {e}")
            return DeliveryResult(channel=channel.name, delivered=False, error=e.reason)
        except Exception as e:
            logger.error(f"NotificationFailure: {channel.name}: {e}")
            return DeliveryResult(channel=channel.name, delivered=False, error=str(e))
        return DeliveryResult(channel=channel.name, delivered=True)

    async def send_alert(self, alert: Alert) -> list[DeliveryResult]:
        """
        Send an alert through all channels at once.

        Each channel succeeds or fails on its own; there are no retries.
        Results are returned in channel order.
        """
        logger.info(f"Sending {alert.severity.value} security alert: {alert.title}")
        if not self.channels:
            logger.warning("No notification channels configured")
            return []
        recipients = self.config.recipients_for(alert.severity)
        return list(
            await asyncio.gather(*(self._deliver(channel, alert, recipients) for channel in self.channels))
        )

    def dispatch(self, alert: Alert) -> list[DeliveryResult]:
        """Synchronous wrapper around send_alert for the CLI and console."""
        return asyncio.run(self.send_alert(alert))


def sample_alert(severity: Severity = Severity.HIGH) -> Alert:
    """A sample alert for verifying channel setup."""
    return Alert(
        severity=severity,
        title="Test Security Alert",
        description="This is a test security alert to verify notification delivery.",
        vulnerabilities=[
            AlertVulnerability(
                package="test-package",
                severity=Severity.HIGH,
                title="Test vulnerability for notification system",
            )
        ],
        actions=[
            "Run security scan to identify issues",
            "Update affected packages",
            "Review security report",
        ],
    )


def emergency_alert(vulnerabilities: Optional[list[AlertVulnerability]] = None) -> Alert:
    return Alert(
        severity=Severity.CRITICAL,
        title="Emergency Security Alert",
        description="Critical security vulnerabilities detected - immediate action required",
        vulnerabilities=vulnerabilities or [],
        actions=["Run dep-remediation --auto-update", "Review and merge pending security branches"],
    )

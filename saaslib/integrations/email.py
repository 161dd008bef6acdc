# =============================================================================
# Email Delivery Integration
# =============================================================================
#
# Providers (exactly one active, chosen by SAASLIB_EMAIL_PROVIDER):
#   - console:    log the email instead of sending (development default)
#   - ses:        AWS SES v2 via boto3
#       SAASLIB_AWS_SES_REGION, SAASLIB_AWS_SES_ACCESS_KEY_ID,
#       SAASLIB_AWS_SES_SECRET_ACCESS_KEY
#   - sendgrid:   SendGrid v3 REST API      (SAASLIB_SENDGRID_API_KEY)
#   - mailersend: MailerSend v1 REST API    (SAASLIB_MAILERSEND_API_KEY)
#
# All providers implement EmailSender.send(to, subject, html_body,
# unsubscribe_url). A failed send is logged and reported in the returned
# EmailOutcome; it never raises into the auth flow that triggered it.
#
# =============================================================================

from __future__ import annotations

import asyncio
import html
import logging
import re
from typing import Any, Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from saaslib.config import EmailProvider, Settings
from saaslib.core.models import UserIdentity

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================


class EmailOutcome(BaseModel):
    """Result of one send attempt."""

    sent: bool
    provider: EmailProvider
    message_id: str | None = None
    error: str | None = None


class EmailSender(Protocol):
    """Capability shared by every email provider."""

    provider: EmailProvider

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome:
        ...


def _bare_address(address: str) -> str:
    """Strip a "Name <email>" wrapper down to the address."""
    match = re.search(r"<([^>]+)>", address)
    return match.group(1) if match else address.strip()


def _unsubscribe_headers(from_address: str, unsubscribe_url: str) -> dict[str, str]:
    return {
        "List-Unsubscribe": f"<mailto:{from_address}?subject=unsubscribe>, <{unsubscribe_url}>",
        "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
    }


# =============================================================================
# Providers
# =============================================================================


class ConsoleEmailSender:
    """Logs emails instead of sending them."""

    provider = EmailProvider.CONSOLE

    def __init__(self, from_address: str = "noreply@example.com"):
        self.from_address = from_address

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome:
        logger.warning(f"Email provider not configured - would send '{subject}' to {to}")
        logger.info(f"Email content:\n{html_body}")
        return EmailOutcome(sent=True, provider=self.provider)


class SesEmailSender:
    """Send emails via AWS SES (v2 API)."""

    provider = EmailProvider.SES

    def __init__(self, client: Any, from_address: str, sender_name: str = ""):
        self.client = client
        self.from_address = from_address
        self.sender_name = sender_name

    @property
    def formatted_sender(self) -> str:
        if self.sender_name:
            return f"{self.sender_name} <{_bare_address(self.from_address)}>"
        return self.from_address

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome:
        simple: dict[str, Any] = {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Html": {"Data": html_body, "Charset": "UTF-8"}},
        }
        if unsubscribe_url:
            simple["Headers"] = [
                {"Name": name, "Value": value}
                for name, value in _unsubscribe_headers(
                    _bare_address(self.from_address), unsubscribe_url
                ).items()
            ]

        try:
            response = await asyncio.to_thread(
                self.client.send_email,
                FromEmailAddress=self.formatted_sender,
                Destination={"ToAddresses": [to]},
                Content={"Simple": simple},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to send email to {to} via SES: {e}")
            return EmailOutcome(sent=False, provider=self.provider, error=str(e))

        message_id = response.get("MessageId")
        logger.info(f"Email {message_id} sent to {to} via SES")
        return EmailOutcome(sent=True, provider=self.provider, message_id=message_id)


class SendGridEmailSender:
    """Send emails via the SendGrid v3 REST API."""

    provider = EmailProvider.SENDGRID
    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        from_address: str,
        sender_name: str = "",
    ):
        self.client = client
        self.api_key = api_key
        self.from_address = _bare_address(from_address)
        self.sender_name = sender_name

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome:
        sender: dict[str, str] = {"email": self.from_address}
        if self.sender_name:
            sender["name"] = self.sender_name

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/html", "value": html_body}],
        }
        if unsubscribe_url:
            payload["headers"] = _unsubscribe_headers(self.from_address, unsubscribe_url)

        try:
            response = await self.client.post(
                self.API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {to} via SendGrid: {e}")
            return EmailOutcome(sent=False, provider=self.provider, error=str(e))

        if response.status_code >= 300:
            logger.error(f"SendGrid rejected email to {to}: {response.status_code} {response.text}")
            return EmailOutcome(
                sent=False,
                provider=self.provider,
                error=f"HTTP {response.status_code}",
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info(f"Email sent to {to} via SendGrid")
        return EmailOutcome(sent=True, provider=self.provider, message_id=message_id)


class MailerSendEmailSender:
    """Send emails via the MailerSend v1 REST API."""

    provider = EmailProvider.MAILERSEND
    API_URL = "https://api.mailersend.com/v1/email"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        from_address: str,
        sender_name: str = "",
    ):
        self.client = client
        self.api_key = api_key
        self.from_address = _bare_address(from_address)
        self.sender_name = sender_name or self.from_address.split("@")[0]

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome:
        sender = {"email": self.from_address, "name": self.sender_name}
        payload = {
            "from": sender,
            "to": [{"email": to, "name": to.split("@")[0]}],
            "reply_to": sender,
            "subject": subject,
            "html": html_body,
        }
        # MailerSend only accepts custom headers on some plans; the
        # unsubscribe link is expected in the body instead.

        try:
            response = await self.client.post(
                self.API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {to} via MailerSend: {e}")
            return EmailOutcome(sent=False, provider=self.provider, error=str(e))

        if response.status_code >= 300:
            logger.error(f"MailerSend rejected email to {to}: {response.status_code} {response.text}")
            return EmailOutcome(
                sent=False,
                provider=self.provider,
                error=f"HTTP {response.status_code}",
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info(f"Email sent to {to} via MailerSend")
        return EmailOutcome(sent=True, provider=self.provider, message_id=message_id)


def build_email_sender(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    ses_client: Any = None,
) -> EmailSender:
    """
    Resolve the configured provider once, at startup.

    Clients may be injected; otherwise they are constructed from settings.
    """
    provider = settings.email_provider

    if provider == EmailProvider.SES:
        if ses_client is None:
            ses_client = boto3.client(
                "sesv2",
                region_name=settings.aws_ses_region,
                aws_access_key_id=settings.aws_ses_access_key_id or None,
                aws_secret_access_key=settings.aws_ses_secret_access_key or None,
            )
        return SesEmailSender(ses_client, settings.email_from, settings.email_sender_name)

    if provider == EmailProvider.SENDGRID:
        return SendGridEmailSender(
            http_client or httpx.AsyncClient(timeout=10.0),
            settings.sendgrid_api_key,
            settings.email_from,
            settings.email_sender_name,
        )

    if provider == EmailProvider.MAILERSEND:
        return MailerSendEmailSender(
            http_client or httpx.AsyncClient(timeout=10.0),
            settings.mailersend_api_key,
            settings.email_from,
            settings.email_sender_name,
        )

    return ConsoleEmailSender(settings.email_from)


# =============================================================================
# Email Templates
# =============================================================================


class EmailTemplate(BaseModel):
    """A subject + HTML body pair rendered with ``str.format``."""

    subject: str
    html: str
    disabled: bool = False

    def render(self, data: dict[str, Any]) -> tuple[str, str]:
        return self.subject.format(**data), self.html.format(**data)


DEFAULT_TEMPLATES: dict[str, EmailTemplate] = {
    "welcome": EmailTemplate(
        subject="Welcome",
        html="<p>Welcome, {name}!</p>",
    ),
    "verification": EmailTemplate(
        subject="Please verify your email",
        html=(
            "<p>Please verify your email with code: <strong>{code}</strong></p>"
            '<p>Or follow this link: <a href="{link}">{link}</a></p>'
            "<p>This code expires in {expires_in}.</p>"
        ),
    ),
    "password_reset": EmailTemplate(
        subject="Password Reset Request",
        html=(
            '<p>To reset your password, please click the following link: <a href="{link}">{link}</a></p>'
            "<p>This link expires in {expires_in}. If you didn't request this, "
            "you can safely ignore this email.</p>"
        ),
    ),
    "email_verified": EmailTemplate(
        subject="Email verified",
        html='<p>Your email has been verified. <a href="{app_url}">Continue</a></p>',
    ),
    "new_subscription": EmailTemplate(
        subject="Subscription Confirmation - {plan}",
        html="<p>Thank you for subscribing to {plan}!</p>",
    ),
    "failed_payment": EmailTemplate(
        subject="Quick action needed for your subscription",
        html=(
            "<p>Hi {name},</p>"
            "<p>We noticed that your recent payment of {amount} couldn't be processed successfully.</p>"
            "<p>Here's what happened: {reason}</p>"
            '<p>To keep your service running smoothly, please update your payment details here: '
            '<a href="{payment_fix_url}">{payment_fix_url}</a></p>'
        ),
    ),
}


# =============================================================================
# Email Service
# =============================================================================


class EmailService:
    """Renders notification templates and hands them to the active sender."""

    def __init__(
        self,
        sender: EmailSender,
        settings: Settings,
        templates: dict[str, EmailTemplate] | None = None,
    ):
        self.sender = sender
        self.settings = settings
        self.templates = {**DEFAULT_TEMPLATES, **(templates or {})}

    def _link(self, path: str, **params: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return str(httpx.URL(f"{base}{path}", params=params))

    @staticmethod
    def _display_name(user: UserIdentity) -> str:
        return html.escape(user.name or user.email.split("@")[0])

    async def send_template(
        self,
        to: str,
        template: str,
        data: dict[str, Any],
        unsubscribe_url: str | None = None,
    ) -> EmailOutcome | None:
        """
        Render and send a named template.

        Returns None when the template is disabled.
        """
        tpl = self.templates.get(template)
        if tpl is None:
            logger.error(f"Unknown email template: {template}")
            return EmailOutcome(
                sent=False, provider=self.sender.provider, error=f"unknown template {template}"
            )
        if tpl.disabled:
            return None

        try:
            subject, body = tpl.render(data)
        except KeyError as e:
            logger.error(f"Missing template variable for '{template}': {e}")
            return EmailOutcome(sent=False, provider=self.sender.provider, error=str(e))

        return await self.sender.send(to, subject, body, unsubscribe_url)

    async def send_welcome(self, user: UserIdentity) -> EmailOutcome | None:
        return await self.send_template(
            user.email, "welcome", {"name": self._display_name(user), "email": user.email}
        )

    async def send_verification(
        self, user: UserIdentity, code: str, expires_in: str = "24 hours"
    ) -> EmailOutcome | None:
        """Send an email verification code with a one-click link."""
        link = self._link("/verify-email", userId=user.id, code=code)
        return await self.send_template(
            user.email,
            "verification",
            {"name": self._display_name(user), "code": code, "link": link, "expires_in": expires_in},
        )

    async def send_password_reset(
        self, user: UserIdentity, code: str, expires_in: str = "1 hour"
    ) -> EmailOutcome | None:
        link = self._link("/complete-password-reset", code=code)
        return await self.send_template(
            user.email,
            "password_reset",
            {"name": self._display_name(user), "code": code, "link": link, "expires_in": expires_in},
        )

    async def send_email_verified(self, user: UserIdentity) -> EmailOutcome | None:
        return await self.send_template(
            user.email, "email_verified", {"app_url": self.settings.frontend_url}
        )

    async def send_new_subscription(self, user: UserIdentity, plan: str) -> EmailOutcome | None:
        """Confirm a new subscription. Only sent if a template exists for it."""
        return await self.send_template(
            user.email,
            "new_subscription",
            {"name": self._display_name(user), "plan": html.escape(plan)},
        )

    async def send_failed_payment(
        self,
        user: UserIdentity,
        reason: str,
        amount: str,
        payment_fix_url: str,
    ) -> EmailOutcome | None:
        if not user.email:
            logger.warning("Cannot send failed payment email: no email address provided")
            return None
        return await self.send_template(
            user.email,
            "failed_payment",
            {
                "name": self._display_name(user) if user.name else "there",
                "reason": html.escape(reason),
                "amount": html.escape(amount),
                "payment_fix_url": payment_fix_url,
            },
        )

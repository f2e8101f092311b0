"""
Email Service using Resend

Renders and sends transactional emails for registration, verification and
password recovery.

Templates are pure functions keyed by EmailKind: each takes the template data
and returns the subject plus HTML and plain-text bodies. All user-supplied
values are HTML-escaped before they are placed in markup.

EmailNotifier.send() raises EmailDeliveryError on failure so callers that
depend on delivery can react. EmailNotifier.dispatch() runs a send in a
tracked background task for side-effect emails that must not block the
response; outstanding tasks are drained on shutdown.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from html import escape
from typing import Any

import resend

from shule.core.config import Settings

logger = logging.getLogger(__name__)


class EmailKind(str, Enum):
    """Transactional email templates."""

    FOUNDER_VERIFICATION = "founder_verification"
    SCHOOL_EMAIL_VERIFICATION = "school_email_verification"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    WELCOME = "welcome"


class EmailDeliveryError(Exception):
    """Raised when an email could not be handed to the provider."""


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: str | None = None


# ============================================
# Templates
# ============================================


def _layout(title: str, body: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1f2937; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
            .header {{ color: #1a365d; margin-bottom: 24px; }}
            .code {{ display: inline-block; background-color: #f3f4f6; color: #1a365d; font-size: 28px; letter-spacing: 6px; font-weight: bold; padding: 14px 28px; border-radius: 8px; margin: 24px 0; }}
            .button {{ display: inline-block; background-color: #1a365d; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; margin: 24px 0; }}
            .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1 class="header">{title}</h1>
            {body}
            <div class="footer">
                <p>If you did not request this email, you can safely ignore it.</p>
                <p>Shule SMS - School Management System</p>
            </div>
        </div>
    </body>
    </html>
    """


def _expiry_text(minutes: int) -> str:
    if minutes % 60 == 0 and minutes >= 60:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


def render_founder_verification(data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    """Verification code for a founder who just registered a school."""
    founder_name = escape(str(data.get("founder_name", "")))
    school_name = escape(str(data.get("school_name", "")))
    school_code = escape(str(data.get("school_code", "")))
    code = escape(str(data["code"]))
    expires = _expiry_text(int(data.get("expires_minutes", 30)))
    verify_url = f"{frontend_url}/verify-email"

    body = f"""
            <p>Hello {founder_name},</p>

            <p>Thank you for registering <strong>{school_name}</strong> ({school_code}) on Shule SMS.</p>

            <p>Enter this code to verify your email address and activate your school:</p>

            <div class="code">{code}</div>

            <p>You can enter it at <a href="{verify_url}">{verify_url}</a>.</p>

            <p><strong>This code expires in {expires}.</strong></p>
    """
    text = (
        f"Hello {data.get('founder_name', '')},\n\n"
        f"Your Shule SMS verification code for {data.get('school_name', '')} is {data['code']}.\n"
        f"It expires in {expires}. Enter it at {verify_url}.\n"
    )
    return RenderedEmail(
        subject=f"Verify your email for {data.get('school_name', 'your school')}",
        html=_layout("Verify Your Email", body),
        text=text,
    )


def render_school_email_verification(data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    """Code confirming the school's own contact address."""
    school_name = escape(str(data.get("school_name", "")))
    founder_name = escape(str(data.get("founder_name", "")))
    code = escape(str(data["code"]))
    expires = _expiry_text(int(data.get("expires_minutes", 24 * 60)))

    body = f"""
            <p>Hello,</p>

            <p>{founder_name} registered <strong>{school_name}</strong> on Shule SMS with this email address.</p>

            <p>Use this code to confirm that the address belongs to the school:</p>

            <div class="code">{code}</div>

            <p><strong>This code expires in {expires}.</strong></p>
    """
    text = (
        f"{data.get('founder_name', '')} registered {data.get('school_name', '')} on Shule SMS.\n"
        f"Confirm this school email address with code {data['code']} "
        f"(expires in {expires}).\n"
    )
    return RenderedEmail(
        subject=f"Confirm the email address for {data.get('school_name', 'your school')}",
        html=_layout("Confirm School Email", body),
        text=text,
    )


def render_password_reset(data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    user_name = escape(str(data.get("user_name", "")))
    code = escape(str(data["code"]))
    expires = _expiry_text(int(data.get("expires_minutes", 15)))
    reset_url = f"{frontend_url}/reset-password"

    body = f"""
            <p>Hello {user_name},</p>

            <p>We received a request to reset your Shule SMS password. Your reset code is:</p>

            <div class="code">{code}</div>

            <p>Enter it at <a href="{reset_url}">{reset_url}</a>.</p>

            <p><strong>This code expires in {expires}.</strong> Resetting your password signs you out on every device.</p>
    """
    text = (
        f"Hello {data.get('user_name', '')},\n\n"
        f"Your Shule SMS password reset code is {data['code']}. "
        f"It expires in {expires}. Enter it at {reset_url}.\n"
    )
    return RenderedEmail(
        subject="Reset your Shule SMS password",
        html=_layout("Reset Your Password", body),
        text=text,
    )


def render_email_change(data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    user_name = escape(str(data.get("user_name", "")))
    code = escape(str(data["code"]))
    expires = _expiry_text(int(data.get("expires_minutes", 60)))

    body = f"""
            <p>Hello {user_name},</p>

            <p>Use this code to confirm your new email address:</p>

            <div class="code">{code}</div>

            <p><strong>This code expires in {expires}.</strong></p>
    """
    text = (
        f"Hello {data.get('user_name', '')},\n\n"
        f"Your email change code is {data['code']} (expires in {expires}).\n"
    )
    return RenderedEmail(
        subject="Confirm your new email address",
        html=_layout("Confirm Email Change", body),
        text=text,
    )


def render_welcome(data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    founder_name = escape(str(data.get("founder_name", "")))
    school_name = escape(str(data.get("school_name", "")))
    school_code = escape(str(data.get("school_code", "")))
    login_url = f"{frontend_url}/login"

    body = f"""
            <p>Hello {founder_name},</p>

            <p><strong>{school_name}</strong> is now active on Shule SMS. Your school code is <strong>{school_code}</strong>.</p>

            <p>Your 30-day free trial has started. Sign in to set up classes, staff and students:</p>

            <a href="{login_url}" class="button">Sign In</a>
    """
    text = (
        f"Hello {data.get('founder_name', '')},\n\n"
        f"{data.get('school_name', '')} ({data.get('school_code', '')}) is now active on Shule SMS.\n"
        f"Sign in at {login_url}.\n"
    )
    return RenderedEmail(
        subject=f"Welcome to Shule SMS, {data.get('school_name', '')}",
        html=_layout("Welcome to Shule SMS", body),
        text=text,
    )


TEMPLATES: dict[EmailKind, Callable[[dict[str, Any], str], RenderedEmail]] = {
    EmailKind.FOUNDER_VERIFICATION: render_founder_verification,
    EmailKind.SCHOOL_EMAIL_VERIFICATION: render_school_email_verification,
    EmailKind.PASSWORD_RESET: render_password_reset,
    EmailKind.EMAIL_CHANGE: render_email_change,
    EmailKind.WELCOME: render_welcome,
}


def render(kind: EmailKind, data: dict[str, Any], frontend_url: str) -> RenderedEmail:
    return TEMPLATES[kind](data, frontend_url)


# ============================================
# Delivery
# ============================================


class EmailNotifier:
    """Sends rendered templates through Resend."""

    def __init__(
        self,
        *,
        api_key: str | None,
        sender: str,
        frontend_url: str,
        timeout_seconds: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

        if api_key:
            resend.api_key = api_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            api_key=settings.resend_api_key,
            sender=settings.email_from,
            frontend_url=settings.frontend_url,
            timeout_seconds=settings.email_timeout_seconds,
        )

    async def send(self, kind: EmailKind, recipient: str, data: dict[str, Any]) -> EmailResult:
        """
        Render and send one email.

        Args:
            kind: Template to render
            recipient: Destination address
            data: Template data

        Returns:
            EmailResult with the provider message id

        Raises:
            EmailDeliveryError: If the provider rejected the email or timed out
        """
        message = render(kind, data, self.frontend_url)

        if not self.api_key:
            logger.warning("RESEND_API_KEY not set - logging email instead of sending")
            logger.info(f"EMAIL TO: {recipient} | SUBJECT: {message.subject}")
            return EmailResult(success=True)

        params: resend.Emails.SendParams = {
            "from": self.sender,
            "to": [recipient],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }

        try:
            # Run sync Resend call in thread pool to avoid blocking event loop
            response = await asyncio.wait_for(
                asyncio.to_thread(resend.Emails.send, params),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(f"Timed out sending {kind.value} email to {recipient}")
            raise EmailDeliveryError(f"Timed out sending {kind.value} email") from e
        except Exception as e:
            logger.error(f"Failed to send {kind.value} email to {recipient}: {e}")
            raise EmailDeliveryError(f"Failed to send {kind.value} email") from e

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info(f"Email {kind.value} sent to {recipient}, id: {message_id}")
        return EmailResult(success=True, message_id=message_id)

    async def send_safely(
        self, kind: EmailKind, recipient: str, data: dict[str, Any]
    ) -> EmailResult:
        """Send, logging instead of raising on delivery failure."""
        try:
            return await self.send(kind, recipient, data)
        except EmailDeliveryError as e:
            logger.error(f"Background email {kind.value} to {recipient} failed: {e}")
            return EmailResult(success=False)

    def dispatch(self, kind: EmailKind, recipient: str, data: dict[str, Any]) -> asyncio.Task:
        """Send in a background task that is tracked until it finishes."""
        task = asyncio.create_task(self.send_safely(kind, recipient, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding background sends to finish."""
        if not self._tasks:
            return

        logger.info(f"Waiting for {len(self._tasks)} pending email(s)")
        _, not_done = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} email(s) still pending at shutdown")


__all__ = [
    "EmailKind",
    "EmailDeliveryError",
    "EmailNotifier",
    "EmailResult",
    "RenderedEmail",
    "render",
]

"""
Notify module for the Course Watcher pipeline.

This module delivers course availability changes. Every channel implements
the same Notifier interface with a single deliver(delta) operation:
- ConsoleNotifier: printed report (always enabled)
- EmailNotifier: SMTP with TLS, plain text + HTML bodies
- SmsNotifier: Twilio REST API, one message per recipient
- WebhookNotifier: JSON POST to an HTTP endpoint

deliver() never raises. Failures are reported in the returned
DeliveryResult so one broken channel cannot stop the others.
"""

import smtplib
import ssl
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, TextIO

import requests

from course_watcher.models import Course, Delta
from course_watcher.utils import format_points, get_logger, utc_now


# Module logger
logger = get_logger("notify")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
REQUEST_TIMEOUT = 30  # seconds
SMTP_TIMEOUT = 30  # seconds

REPORT_TITLE = "COURSE AVAILABILITY CHANGES"


class NotificationError(Exception):
    """Raised by a notifier when a message could not be delivered."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


@dataclass
class DeliveryResult:
    """
    Outcome of one notifier delivering one delta.

    Attributes:
        name: Notifier name.
        success: True if the delta was delivered (or there was nothing to send).
        error: Error description if delivery failed.
    """
    name: str
    success: bool
    error: Optional[str] = None


# =============================================================================
# Message formatting
# =============================================================================


def format_course_line(course: Course, prefix: str = "") -> str:
    """
    Format a course as a single line.

    Args:
        course: Course to format.
        prefix: Optional marker such as "+" or "-".

    Returns:
        "[+] CODE - Name (2.5 points, Faculty)" style line.
    """
    head = f"[{prefix}] " if prefix else ""
    name = f" - {course.name}" if course.name else ""
    return f"{head}{course.code}{name} ({format_points(course.points)} points, {course.faculty})"


def build_subject(delta: Delta) -> str:
    """Email subject line summarizing the delta."""
    return f"Course Alert: {len(delta.added)} new, {len(delta.removed)} removed"


def format_report_plain(delta: Delta, timestamp: Optional[datetime] = None) -> str:
    """
    Format a delta as a plain text report.

    Args:
        delta: Changes to report.
        timestamp: Detection time. Defaults to current UTC time.

    Returns:
        Multi-line plain text report.
    """
    timestamp = timestamp or utc_now()

    lines = [
        REPORT_TITLE,
        "=" * 60,
        f"Detection Time: {timestamp.strftime('%Y-%m-%d %H:%M UTC')}",
    ]

    if delta.added:
        lines.extend(["", f"NEW COURSES AVAILABLE ({len(delta.added)}):", "-" * 40])
        for course in delta.added:
            lines.append(format_course_line(course, "+"))
            if course.url:
                lines.append(f"    URL: {course.url}")

    if delta.removed:
        lines.extend(["", f"COURSES NO LONGER AVAILABLE ({len(delta.removed)}):", "-" * 40])
        for course in delta.removed:
            lines.append(format_course_line(course, "-"))
            if course.url:
                lines.append(f"    URL: {course.url}")

    lines.extend(["", "=" * 60])

    return "\n".join(lines)


def _escape_html(text: str) -> str:
    return (
        text
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def _format_course_html(course: Course, removed: bool) -> List[str]:
    css_class = "course removed" if removed else "course"
    code = _escape_html(course.code)
    if course.url:
        code = f'<a href="{_escape_html(course.url)}">{code}</a>'

    return [
        f'    <div class="{css_class}">',
        f'      <div class="course-code">{code}</div>',
        f'      <div class="course-name">{_escape_html(course.name)}</div>',
        f'      <div class="course-meta">{format_points(course.points)} points | '
        f'{_escape_html(course.faculty)}</div>',
        "    </div>",
    ]


def format_report_html(delta: Delta, timestamp: Optional[datetime] = None) -> str:
    """
    Format a delta as an HTML email body.

    Args:
        delta: Changes to report.
        timestamp: Detection time. Defaults to current UTC time.

    Returns:
        HTML document string.
    """
    timestamp = timestamp or utc_now()

    html_lines = [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        '  <meta charset="utf-8">',
        "  <style>",
        "    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; }",
        "    h2 { color: #0066cc; }",
        "    .course { background: #f5f5f5; border-left: 4px solid #0066cc; padding: 15px; margin: 10px 0; }",
        "    .course.removed { border-left-color: #cc3333; }",
        "    .course-code { font-weight: bold; }",
        "    .course-meta { color: #666; font-size: 0.9em; }",
        "    .footer { margin-top: 30px; font-size: 12px; color: #666; border-top: 1px solid #ddd; }",
        "  </style>",
        "</head>",
        "<body>",
        "  <h1>Course Availability Changes</h1>",
        f"  <p>Detection Time: {timestamp.strftime('%Y-%m-%d %H:%M UTC')}</p>",
    ]

    if delta.added:
        html_lines.append(f"  <h2>New Courses Available ({len(delta.added)})</h2>")
        for course in delta.added:
            html_lines.extend(_format_course_html(course, removed=False))

    if delta.removed:
        html_lines.append(f"  <h2>Courses No Longer Available ({len(delta.removed)})</h2>")
        for course in delta.removed:
            html_lines.extend(_format_course_html(course, removed=True))

    html_lines.extend([
        '  <div class="footer">',
        "    <p>This email was automatically sent by Course Watcher.</p>",
        "  </div>",
        "</body>",
        "</html>",
    ])

    return "\n".join(html_lines)


def format_sms_body(delta: Delta) -> str:
    """Compact SMS text listing added and removed course codes and names."""
    lines = ["Course Alert"]

    if delta.added:
        lines.extend(["", f"New ({len(delta.added)}):"])
        lines.extend(f"+ {c.code} - {c.name}" if c.name else f"+ {c.code}" for c in delta.added)

    if delta.removed:
        lines.extend(["", f"Removed ({len(delta.removed)}):"])
        lines.extend(f"- {c.code} - {c.name}" if c.name else f"- {c.code}" for c in delta.removed)

    return "\n".join(lines)


def delta_to_payload(delta: Delta) -> Dict[str, Any]:
    """JSON-serializable representation of a delta."""
    return {
        "added": [course.to_dict() for course in delta.added],
        "removed": [course.to_dict() for course in delta.removed],
        "total_changes": delta.total_changes(),
    }


# =============================================================================
# Notifiers
# =============================================================================


class Notifier(ABC):
    """
    Base class for notification channels.

    Subclasses implement send(); deliver() wraps it so that failures are
    reported instead of raised.
    """

    name = "notifier"

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    @abstractmethod
    def send(self, delta: Delta) -> None:
        """
        Send the delta through this channel.

        Raises:
            NotificationError: If delivery failed.
        """

    def deliver(self, delta: Delta) -> DeliveryResult:
        """
        Deliver a delta, capturing any failure.

        Args:
            delta: Filtered changes to deliver.

        Returns:
            DeliveryResult for this notifier.
        """
        if delta.is_empty():
            logger.debug(f"Notifier '{self.name}': no changes, skipping")
            return DeliveryResult(name=self.name, success=True)

        if self.dry_run:
            logger.info(
                f"[DRY RUN] Notifier '{self.name}' would deliver "
                f"{len(delta.added)} added, {len(delta.removed)} removed"
            )
            return DeliveryResult(name=self.name, success=True)

        try:
            self.send(delta)
        except NotificationError as e:
            logger.warning(f"Notifier '{self.name}' failed: {e}")
            return DeliveryResult(name=self.name, success=False, error=str(e))
        except Exception as e:
            # The sync is already committed, nothing may escape past this point
            logger.exception(f"Notifier '{self.name}' raised an unexpected error: {e}")
            return DeliveryResult(name=self.name, success=False, error=f"{type(e).__name__}: {e}")

        logger.info(f"Notifier '{self.name}' succeeded")
        return DeliveryResult(name=self.name, success=True)


class ConsoleNotifier(Notifier):
    """Print the change report to a text stream (stdout by default)."""

    name = "console"

    def __init__(self, stream: Optional[TextIO] = None, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.stream = stream

    def send(self, delta: Delta) -> None:
        stream = self.stream or sys.stdout
        print(format_report_plain(delta), file=stream)
        stream.flush()


class EmailNotifier(Notifier):
    """
    Send the change report by email via SMTP with TLS.

    Port 465 uses implicit TLS (SMTP_SSL); other ports use STARTTLS.
    """

    name = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        email_from: str,
        recipients: List[str],
        dry_run: bool = False
    ):
        super().__init__(dry_run=dry_run)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.email_from = email_from
        self.recipients = recipients

    def build_message(self, delta: Delta) -> EmailMessage:
        """Build the multipart (plain + HTML) email for a delta."""
        timestamp = utc_now()

        msg = EmailMessage()
        msg["Subject"] = build_subject(delta)
        msg["From"] = self.email_from
        msg["To"] = ", ".join(self.recipients)
        msg["Date"] = timestamp.strftime("%a, %d %b %Y %H:%M:%S +0000")

        msg.set_content(format_report_plain(delta, timestamp))
        msg.add_alternative(format_report_html(delta, timestamp), subtype="html")

        return msg

    def send(self, delta: Delta) -> None:
        msg = self.build_message(delta)
        ssl_context = ssl.create_default_context()

        logger.info(
            f"Sending email to {len(self.recipients)} recipient(s) "
            f"via {self.smtp_host}:{self.smtp_port}: {msg['Subject']}"
        )

        try:
            if self.smtp_port == 465:
                logger.debug("Using SMTP_SSL (implicit TLS) for port 465")
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT, context=ssl_context) as server:
                    server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                logger.debug(f"Using SMTP with STARTTLS for port {self.smtp_port}")
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT) as server:
                    server.starttls(context=ssl_context)
                    server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)

        except smtplib.SMTPAuthenticationError as e:
            raise NotificationError(f"SMTP authentication failed: {e}", e) from e
        except smtplib.SMTPException as e:
            raise NotificationError(f"SMTP error while sending email: {e}", e) from e
        except ssl.SSLError as e:
            raise NotificationError(f"SSL/TLS error while sending email: {e}", e) from e
        except OSError as e:
            raise NotificationError(f"Could not reach SMTP server {self.smtp_host}:{self.smtp_port}: {e}", e) from e

        logger.info(f"Email sent to {', '.join(self.recipients)}")


class SmsNotifier(Notifier):
    """
    Send a short change summary by SMS through the Twilio REST API.

    Fails only when no recipient could be reached.
    """

    name = "sms"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        recipients: List[str],
        session: Optional[requests.Session] = None,
        dry_run: bool = False
    ):
        super().__init__(dry_run=dry_run)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.recipients = recipients
        self.session = session or requests.Session()

    def send_sms(self, to: str, body: str) -> None:
        """
        Send one SMS message.

        Raises:
            NotificationError: On transport failure or a non-2xx response.
        """
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"

        try:
            response = self.session.post(
                url,
                data={"From": self.from_number, "To": to, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=REQUEST_TIMEOUT
            )
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Twilio request failed: {e}", e) from e

        if not response.ok:
            raise NotificationError(f"Twilio API error (HTTP {response.status_code}): {response.text}")

    def send(self, delta: Delta) -> None:
        body = format_sms_body(delta)
        sent = 0

        for recipient in self.recipients:
            try:
                self.send_sms(recipient, body)
            except NotificationError as e:
                logger.warning(f"Failed to send SMS to {recipient}: {e}")
                continue
            sent += 1
            logger.debug(f"SMS sent to {recipient}")

        logger.info(f"SMS notification: {sent}/{len(self.recipients)} sent")

        if sent == 0 and self.recipients:
            raise NotificationError("Failed to send SMS to any recipient")


class WebhookNotifier(Notifier):
    """POST the delta as JSON to an HTTP endpoint."""

    name = "webhook"

    def __init__(self, url: str, session: Optional[requests.Session] = None, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.url = url
        self.session = session or requests.Session()

    def send(self, delta: Delta) -> None:
        try:
            response = self.session.post(self.url, json=delta_to_payload(delta), timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Webhook request failed: {e}", e) from e

        if not response.ok:
            raise NotificationError(f"Webhook returned HTTP {response.status_code}")


class NotifierChain:
    """Ordered collection of notifiers delivering the same delta."""

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self.notifiers: List[Notifier] = list(notifiers or [])

    def add(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def names(self) -> List[str]:
        return [n.name for n in self.notifiers]

    def deliver_all(self, delta: Delta) -> List[DeliveryResult]:
        """
        Deliver a delta through every notifier in order.

        Args:
            delta: Filtered changes.

        Returns:
            One DeliveryResult per notifier.
        """
        return [notifier.deliver(delta) for notifier in self.notifiers]


def any_succeeded(results: List[DeliveryResult]) -> bool:
    """True if at least one notifier delivered."""
    return any(result.success for result in results)

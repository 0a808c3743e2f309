#!/usr/bin/env python3
"""
Notification sinks: chat webhook, email and report files.

A sink sends one outcome (HealthReport or RollbackRecord) and raises on
failure; the dispatcher decides what a failure means.
"""

import asyncio
import os
import smtplib
from email.mime.text import MIMEText

import httpx
import structlog

from ..reports import STATUS_ICONS, render_markdown, summary_text, write_report
from ..deployment.models import RollbackRecord

logger = structlog.get_logger(__name__)


def _from_config_or_env(config, key):
    """Value of `key`, or of the env var named by `key_env`."""
    if config.get(key):
        return config[key]
    env_name = config.get(f"{key}_env")
    return os.environ.get(env_name) if env_name else None


class NotificationSink:
    name = 'sink'

    async def send(self, outcome):
        raise NotImplementedError


class WebhookSink(NotificationSink):
    """Slack-compatible incoming webhook: POST {"text": ...}."""

    name = 'webhook'

    def __init__(self, url, timeout=10.0, transport=None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, outcome):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json={'text': summary_text(outcome)})
            response.raise_for_status()
        return self.url


class EmailSink(NotificationSink):
    name = 'email'

    def __init__(self, to, from_address='deployguard@localhost', smtp_host='localhost', smtp_port=587,
                 username=None, password=None):
        self.to = to
        self.from_address = from_address
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password

    def build_message(self, outcome):
        if isinstance(outcome, RollbackRecord):
            subject = (f"Rollback {outcome.plan.environment} to {outcome.plan.target_revision}: "
                       f"{outcome.state.value.upper()}")
            status = outcome.state
        else:
            subject = f"Health check {outcome.environment}: {outcome.overall_status.value.upper()}"
            status = outcome.overall_status

        msg = MIMEText(f"{summary_text(outcome)}\n\n{render_markdown(outcome)}\n", 'plain', 'utf-8')
        msg['Subject'] = f"{STATUS_ICONS.get(status, '')} {subject}".strip()
        msg['From'] = self.from_address
        msg['To'] = self.to
        return msg

    def _deliver(self, msg):
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.username and self.password:
                server.starttls()
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, outcome):
        await asyncio.to_thread(self._deliver, self.build_message(outcome))
        return self.to


class ReportFileSink(NotificationSink):
    """Writes the timestamped JSON + Markdown report pair."""

    name = 'report_file'

    def __init__(self, report_dir):
        self.report_dir = report_dir
        self.written = []

    async def send(self, outcome):
        paths = await asyncio.to_thread(write_report, outcome, self.report_dir)
        self.written.extend(paths)
        return ', '.join(str(p) for p in paths)


def build_sinks(config, report_dir, external=True, transport=None):
    """
    Sinks enabled by the `notifications` config section.

    Webhook and email sinks are only built when `external` is true and their
    destination resolves (directly or via the named env var).
    """
    notifications = config.get('notifications', {})
    sinks = []

    if notifications.get('report_file', {}).get('enabled', True):
        sinks.append(ReportFileSink(report_dir))

    if not external:
        return sinks

    webhook = notifications.get('webhook', {})
    url = _from_config_or_env(webhook, 'url')
    if url:
        sinks.append(WebhookSink(url, timeout=webhook.get('timeout', 10.0), transport=transport))
    elif webhook:
        logger.info("notify.webhook_disabled", reason="no webhook URL resolved")

    email = notifications.get('email', {})
    to = _from_config_or_env(email, 'to')
    if to:
        sinks.append(EmailSink(
            to=to,
            from_address=email.get('from_address', 'deployguard@localhost'),
            smtp_host=email.get('smtp_host', 'localhost'),
            smtp_port=email.get('smtp_port', 587),
            username=os.environ.get(email['username_env']) if email.get('username_env') else None,
            password=os.environ.get(email['password_env']) if email.get('password_env') else None,
        ))
    elif email:
        logger.info("notify.email_disabled", reason="no recipient resolved")

    return sinks

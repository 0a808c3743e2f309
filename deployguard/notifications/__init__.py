"""
Notification sinks and the best-effort dispatcher.
"""

from .dispatcher import NotificationDispatcher
from .sinks import EmailSink, NotificationSink, ReportFileSink, WebhookSink, build_sinks

__all__ = [
    'NotificationDispatcher', 'NotificationSink', 'EmailSink', 'ReportFileSink',
    'WebhookSink', 'build_sinks',
]

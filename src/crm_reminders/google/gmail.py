"""Transactional reminder email through the Gmail API."""

import base64
import threading
from email.message import EmailMessage
from typing import Any

from crm_reminders.google.auth import gmail_service


def build_raw_message(to: str, subject: str, body: str) -> str:
    """RFC 2822 HTML message, base64url-encoded as users.messages.send expects."""
    msg = EmailMessage()
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body, subtype="html", charset="utf-8")
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")


class GmailSender:
    """Sends as the authorized account ("me").

    The API client is built lazily on first send and reused; googleapiclient
    objects are not thread-safe, so sends are serialized.
    """

    def __init__(self) -> None:
        self._service: Any = None
        self._lock = threading.Lock()

    def _get_service(self) -> Any:
        if self._service is None:
            self._service = gmail_service()
        return self._service

    def send(self, to: str, subject: str, body: str) -> None:
        raw = build_raw_message(to, subject, body)
        with self._lock:
            service = self._get_service()
            service.users().messages().send(userId="me", body={"raw": raw}).execute()

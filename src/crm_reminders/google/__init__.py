"""Google API integration: OAuth2 credentials and the Gmail email sender."""

from crm_reminders.google.auth import get_credentials, gmail_service
from crm_reminders.google.gmail import GmailSender

__all__ = ["GmailSender", "get_credentials", "gmail_service"]

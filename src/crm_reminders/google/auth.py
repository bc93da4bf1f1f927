"""OAuth for the account reminder emails are sent from.

Only the ``gmail.send`` scope is requested. The client secret and the cached
token live in the state directory; delete the token to switch accounts or
after changing GMAIL_SCOPES.
"""

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource
from googleapiclient.discovery import build as _build

from crm_reminders.storage import STATE_DIR

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.send"]

CLIENT_SECRET_FILE = STATE_DIR / "gmail_client_secret.json"
TOKEN_FILE = STATE_DIR / "gmail_token.json"


def _save_token(creds: Credentials) -> None:
    TOKEN_FILE.parent.mkdir(parents=True, exist_ok=True)
    TOKEN_FILE.write_text(creds.to_json())


def _consent() -> Credentials:
    """Interactive browser consent; needs the OAuth client secret on disk."""
    if not CLIENT_SECRET_FILE.exists():
        raise FileNotFoundError(
            f"Missing {CLIENT_SECRET_FILE}: create a desktop OAuth client for the "
            "sending account and save its JSON at that path"
        )
    flow = InstalledAppFlow.from_client_secrets_file(str(CLIENT_SECRET_FILE), GMAIL_SCOPES)
    return flow.run_local_server(port=0, bind_addr="127.0.0.1")


def get_credentials() -> Credentials:
    """Cached token when valid, refreshed when expired, consent otherwise."""
    creds = None
    if TOKEN_FILE.exists():
        creds = Credentials.from_authorized_user_file(str(TOKEN_FILE), GMAIL_SCOPES)
    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        creds.refresh(Request())
    else:
        creds = _consent()
    _save_token(creds)
    return creds


def gmail_service() -> Resource:
    """Gmail v1 client bound to the sending account."""
    return _build("gmail", "v1", credentials=get_credentials(), cache_discovery=False)

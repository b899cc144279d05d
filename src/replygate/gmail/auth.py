"""OAuth2 credentials for each connected support mailbox.

Every account has its own cached token file under ``gmail.token_dir``.
``connect_mailbox`` runs the interactive consent flow once; the pipeline
only ever loads and refreshes the cached token.
"""

from __future__ import annotations

import os
from pathlib import Path

import google_auth_httplib2
import httplib2
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from replygate.config import GmailConfig
from replygate.errors import CollaboratorError

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]


def token_path(config: GmailConfig, account_id: str) -> Path:
    return Path(config.token_dir) / f"{account_id}.json"


def connect_mailbox(config: GmailConfig, account_id: str) -> Path:
    """Run the browser consent flow and cache the account's token. Returns the token path."""
    if not os.path.exists(config.credentials_file):
        raise FileNotFoundError(f"Gmail credentials file not found: {config.credentials_file}")

    flow = InstalledAppFlow.from_client_secrets_file(config.credentials_file, SCOPES)
    creds = flow.run_local_server(port=0)

    token_file = token_path(config, account_id)
    token_file.parent.mkdir(parents=True, exist_ok=True)
    with open(token_file, "w") as f:
        f.write(creds.to_json())
    return token_file


def authenticate(config: GmailConfig, account_id: str) -> Credentials:
    """Load and refresh the account's cached OAuth token."""
    token_file = token_path(config, account_id)
    if not os.path.exists(token_file):
        raise CollaboratorError(
            f"No Gmail token for account {account_id!r} at {token_file}; connect the mailbox first."
        )

    creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)
    if not creds.valid:
        if creds.expired and creds.refresh_token:
            creds.refresh(Request())
            with open(token_file, "w") as f:
                f.write(creds.to_json())
        else:
            raise CollaboratorError(f"Gmail token for account {account_id!r} is invalid")
    return creds


def get_gmail_service(config: GmailConfig, account_id: str):
    """Return an authenticated Gmail API service with a bounded socket timeout."""
    creds = authenticate(config, account_id)
    http = google_auth_httplib2.AuthorizedHttp(
        creds, http=httplib2.Http(timeout=config.timeout_seconds)
    )
    return build("gmail", "v1", http=http, cache_discovery=False)


def get_user_email(service) -> str:
    """Get the authenticated user's email address."""
    profile = service.users().getProfile(userId="me").execute()
    return profile["emailAddress"]

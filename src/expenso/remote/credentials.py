"""
Google OAuth token persistence for the Sheets adapter.

The interactive consent flow lives outside this package; it leaves an
authorized-user token JSON on disk. We only load, refresh and re-save that
token. When it is missing, revoked or cannot be refreshed we raise
AuthRequiredError so the UI can prompt the user to sign in again.
"""
import os
import stat
from pathlib import Path
from typing import Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from expenso.errors import AuthRequiredError

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


class GoogleTokenStore:
    """
    Manages the on-disk Google token.

    Usage:
        tokens = GoogleTokenStore("~/.expenso/google_token.json")
        creds = tokens.load()   # → google.oauth2.credentials.Credentials
    """

    def __init__(self, token_file: str):
        self._token_file = Path(token_file).expanduser()

    @property
    def path(self) -> Path:
        return self._token_file

    def has_token(self) -> bool:
        return self._token_file.exists()

    def save(self, creds: Credentials) -> None:
        """
        Persist credentials with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        self._token_file.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(self._token_file.parent, stat.S_IRWXU)

        self._token_file.write_text(creds.to_json())
        os.chmod(self._token_file, stat.S_IRUSR | stat.S_IWUSR)

    def clear(self) -> None:
        """Delete the token file (does not raise if already absent)."""
        if self._token_file.exists():
            self._token_file.unlink()

    def load(self, scopes: Optional[list] = None) -> Credentials:
        """
        Load valid credentials, refreshing (and re-saving) them if expired.

        Raises:
            AuthRequiredError: no token, or the token cannot be refreshed.
        """
        if not self._token_file.exists():
            raise AuthRequiredError(
                f"No Google token found at {self._token_file}. Sign in to enable sync."
            )
        try:
            creds = Credentials.from_authorized_user_file(str(self._token_file), scopes or SCOPES)
        except ValueError as exc:
            raise AuthRequiredError(f"Google token at {self._token_file} is invalid") from exc

        if creds.valid:
            return creds
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise AuthRequiredError("Google session has expired. Sign in again.") from exc
            self.save(creds)
            return creds
        raise AuthRequiredError("Google token is not usable. Sign in again.")

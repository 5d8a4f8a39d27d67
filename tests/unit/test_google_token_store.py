"""Tests for GoogleTokenStore token load/refresh/save."""
import os
import stat
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

from expenso.errors import AuthRequiredError
from expenso.remote.credentials import SCOPES, GoogleTokenStore


@pytest.fixture
def token_file(tmp_path):
    return tmp_path / "tokens" / "google_token.json"


@pytest.fixture
def tokens(token_file):
    return GoogleTokenStore(str(token_file))


def _creds(valid=True, expired=False, refresh_token="refresh", as_json='{"token": "t"}'):
    creds = MagicMock()
    creds.valid = valid
    creds.expired = expired
    creds.refresh_token = refresh_token
    creds.to_json.return_value = as_json
    return creds


# ─── save / clear ─────────────────────────────────────────────────────────────

class TestSaveClear:
    def test_save_creates_directory_and_file(self, tokens, token_file):
        tokens.save(_creds())
        assert token_file.exists()
        assert token_file.read_text() == '{"token": "t"}'
        assert tokens.has_token() is True

    def test_save_permissions(self, tokens, token_file):
        tokens.save(_creds())
        assert stat.S_IMODE(os.stat(token_file).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(token_file.parent).st_mode) == 0o700

    def test_clear(self, tokens, token_file):
        tokens.save(_creds())
        tokens.clear()
        assert not token_file.exists()
        tokens.clear()  # already absent, should not raise

    def test_path_expands_user(self):
        assert "~" not in str(GoogleTokenStore("~/.expenso/token.json").path)


# ─── load ─────────────────────────────────────────────────────────────────────

class TestLoad:
    def test_missing_token(self, tokens):
        with pytest.raises(AuthRequiredError, match="No Google token"):
            tokens.load()

    def test_valid_token(self, tokens, token_file):
        tokens.save(_creds())
        creds = _creds()
        with patch(
            "expenso.remote.credentials.Credentials.from_authorized_user_file",
            return_value=creds,
        ) as mock_load:
            assert tokens.load() is creds
        mock_load.assert_called_once_with(str(token_file), SCOPES)

    def test_unparseable_token(self, tokens):
        tokens.save(_creds())
        with patch(
            "expenso.remote.credentials.Credentials.from_authorized_user_file",
            side_effect=ValueError("missing fields"),
        ):
            with pytest.raises(AuthRequiredError):
                tokens.load()

    def test_expired_token_is_refreshed_and_saved(self, tokens, token_file):
        tokens.save(_creds())
        creds = _creds(valid=False, expired=True, as_json='{"token": "fresh"}')
        with patch(
            "expenso.remote.credentials.Credentials.from_authorized_user_file",
            return_value=creds,
        ), patch("expenso.remote.credentials.Request"):
            assert tokens.load() is creds
        creds.refresh.assert_called_once()
        assert token_file.read_text() == '{"token": "fresh"}'

    def test_refresh_failure_requires_auth(self, tokens):
        tokens.save(_creds())
        creds = _creds(valid=False, expired=True)
        creds.refresh.side_effect = RefreshError("invalid_grant")
        with patch(
            "expenso.remote.credentials.Credentials.from_authorized_user_file",
            return_value=creds,
        ), patch("expenso.remote.credentials.Request"):
            with pytest.raises(AuthRequiredError, match="expired"):
                tokens.load()

    def test_invalid_without_refresh_token(self, tokens):
        tokens.save(_creds())
        creds = _creds(valid=False, expired=True, refresh_token=None)
        with patch(
            "expenso.remote.credentials.Credentials.from_authorized_user_file",
            return_value=creds,
        ):
            with pytest.raises(AuthRequiredError):
                tokens.load()

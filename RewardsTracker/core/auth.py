"""
OAuth2 credentials for the Google Sheets record store.

Sync cycles only ever use credentials non-interactively through
:data:`auth_manager`. The browser sign-in in :func:`authenticate` has to be
started from the thread that owns the application.
"""

import json
import logging
import pathlib
import threading
from typing import Dict, Optional, Union

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow

from ..status import status

DEFAULT_SCOPES = ['https://www.googleapis.com/auth/spreadsheets', ]

Credentials = google.oauth2.credentials.Credentials


class AuthExpiredError(Exception):
    """No usable credentials without asking the user to sign in again."""


def _read_token(path: pathlib.Path) -> Credentials:
    """Load a stored token, deleting the file when it cannot be parsed.

    Raises:
        status.CredsInvalidException: The token file is corrupt.
    """
    try:
        return Credentials.from_authorized_user_file(str(path))
    except (ValueError, json.JSONDecodeError) as ex:
        path.unlink(missing_ok=True)
        raise status.CredsInvalidException(f'Stored token at {path} is unreadable') from ex


def _refresh(creds: Credentials) -> None:
    creds.refresh(google.auth.transport.requests.Request())
    save_creds(creds)


class AuthManager:
    """Thread-safe holder of the current credentials.

    Credentials are read lazily from the token file and refreshed in place
    when they expire and a refresh token is available.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._creds: Optional[Credentials] = None

    def get_valid_credentials(self) -> Credentials:
        """
        Return usable credentials without user interaction.

        Raises:
            AuthExpiredError: Signing in through the browser is needed.
            status.AuthenticationException: The token could not be refreshed.
            status.CredsInvalidException: The stored token is corrupt.
        """
        from ..settings import lib

        with self._lock:
            if self._creds is None:
                path = lib.settings.creds_path
                if not path.exists():
                    raise AuthExpiredError('Not signed in')
                self._creds = _read_token(path)

            creds = self._creds
            if not creds.expired:
                return creds
            if not creds.refresh_token:
                raise AuthExpiredError('Token expired and cannot be refreshed; sign in again')

            try:
                _refresh(creds)
            except google.auth.exceptions.RefreshError as ex:
                raise status.AuthenticationException(f'Token refresh was rejected: {ex}') from ex
            return creds

    def set_credentials(self, creds: Optional[Credentials]) -> None:
        with self._lock:
            self._creds = creds

    def clear(self) -> None:
        self.set_credentials(None)


auth_manager = AuthManager()


def save_creds(creds: Union[Credentials, Dict]) -> None:
    """Write ``creds`` to the token file."""
    from ..settings import lib

    path = lib.settings.creds_path
    payload = json.dumps(creds) if isinstance(creds, dict) else creds.to_json()
    path.write_text(payload, encoding='utf-8')
    logging.debug(f'Token written to {path}')


def _cached_credentials(scopes) -> Optional[Credentials]:
    from ..settings import lib

    path = lib.settings.creds_path
    if not path.exists():
        return None
    try:
        creds = _read_token(path)
    except status.CredsInvalidException:
        logging.warning('Discarded an unreadable token; signing in again')
        return None

    if not set(scopes) <= set(creds.scopes or ()):
        logging.info('Stored token was granted different scopes; signing in again')
        return None
    return creds


def _browser_flow(scopes) -> Credentials:
    from ..settings import lib

    if not lib.settings.client_secret_path.exists():
        raise status.ClientSecretNotFoundException
    lib.settings.validate_client_secret()

    flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(
        lib.settings.get_section('client_secret'), scopes=scopes)
    logging.info('Waiting for the browser sign-in to complete')
    try:
        creds = flow.run_local_server(port=0)
    except Exception as ex:
        raise status.AuthenticationException(f'Sign-in failed: {ex}') from ex

    if not creds:
        raise status.AuthenticationException('Sign-in was cancelled')
    if not creds.valid:
        raise status.CredsInvalidException('Sign-in returned unusable credentials')
    save_creds(creds)
    return creds


def authenticate(scopes=None) -> Credentials:
    """
    Sign in and make the credentials available to the sync transport.

    A stored token is reused when it covers ``scopes``, refreshing it first
    if it has expired. Otherwise the installed-app browser flow runs and
    blocks until the user finishes.

    Args:
        scopes (list[str], optional): Defaults to :data:`DEFAULT_SCOPES`.

    Returns:
        Credentials: The signed-in credentials.

    Raises:
        status.ClientSecretNotFoundException: No client secret is configured.
        status.AuthenticationException: The browser flow failed or was cancelled.
        status.CredsInvalidException: The browser flow returned invalid credentials.
    """
    scopes = scopes or DEFAULT_SCOPES
    creds = _cached_credentials(scopes)

    if creds and creds.expired and creds.refresh_token:
        try:
            _refresh(creds)
        except google.auth.exceptions.RefreshError as ex:
            logging.warning(f'Token refresh was rejected ({ex}); signing in again')
            creds = None

    if not creds or creds.expired:
        creds = _browser_flow(scopes)

    auth_manager.set_credentials(creds)
    return creds


def sign_out() -> None:
    """Forget the current credentials and delete the token file."""
    from ..settings import lib

    auth_manager.clear()
    path = lib.settings.creds_path
    if not path.exists():
        logging.debug('Already signed out')
        return
    path.unlink()
    logging.info('Signed out')

"""Status codes and the exceptions that carry them.

Each :class:`Status` has a user-facing message in :data:`STATUS_MESSAGE`.
Raising a :class:`BaseStatusException` subclass logs the message and
reports it through ``signals.error`` so a listener can show it without
catching the exception itself.
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    UnknownStatus = enum.auto()

    # sync.json
    SyncConfigNotFound = enum.auto()
    SyncConfigInvalid = enum.auto()

    # Google sign-in
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote record store
    SpreadsheetIdNotConfigured = enum.auto()
    ServiceUnavailable = enum.auto()
    TransportUnavailable = enum.auto()
    TransportPartialFailure = enum.auto()

    # Local data
    LocalStoreCorrupt = enum.auto()
    IdentityAmbiguous = enum.auto()
    CatalogInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Something went wrong while syncing.',

    Status.SyncConfigNotFound: 'The sync settings file is missing.',
    Status.SyncConfigInvalid: 'The sync settings file is incomplete or has invalid values.',

    Status.ClientSecretNotFound: 'No Google client secret is configured. Add one before using the spreadsheet store.',
    Status.ClientSecretInvalid: 'The Google client secret is not a valid OAuth client configuration.',
    Status.CredsInvalid: 'The saved Google sign-in is no longer valid. Sign in again.',
    Status.NotAuthenticated: 'Not signed in to Google. Sign in again to keep syncing.',

    Status.SpreadsheetIdNotConfigured: 'No spreadsheet id is set for the remote record store.',
    Status.ServiceUnavailable: 'Google Sheets did not respond. Check the connection.',
    Status.TransportUnavailable: 'The remote store is unreachable. Changes are kept locally and synced later.',
    Status.TransportPartialFailure: 'Some records could not be uploaded. They will be retried on the next sync.',

    Status.LocalStoreCorrupt: 'The local store could not be read and was reset. Data will be restored from the remote.',
    Status.IdentityAmbiguous: 'A record matched more than one remote record and was kept as a separate entry.',
    Status.CatalogInvalid: 'The card catalog could not be read. The previous catalog is kept.',
}


def get_message(status: Status) -> str:
    return STATUS_MESSAGE.get(status, STATUS_MESSAGE[Status.UnknownStatus])


class BaseStatusException(Exception):
    """An error the user should hear about.

    Attributes:
        status (Status): Set by each subclass.
        status_message (str): The status's user-facing message.
        detail (str): The context passed when raising, or an empty string.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message or ''
        text = f'{self.status_message} {self.detail}'.strip()
        super().__init__(text)

        logging.error(text)

        from ..core.signals import signals
        signals.error.emit(self.detail or self.status_message)


class SyncConfigNotFoundException(BaseStatusException):
    status = Status.SyncConfigNotFound


class SyncConfigInvalidException(BaseStatusException):
    status = Status.SyncConfigInvalid


class ClientSecretNotFoundException(BaseStatusException):
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(BaseStatusException):
    status = Status.ClientSecretInvalid


class CredsInvalidException(BaseStatusException):
    """The stored token could not be parsed."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Sign-in or token refresh failed."""
    status = Status.NotAuthenticated


class SpreadsheetIdNotConfiguredException(BaseStatusException):
    status = Status.SpreadsheetIdNotConfigured


class ServiceUnavailableException(BaseStatusException):
    """The Sheets API could not be reached or returned a server error."""
    status = Status.ServiceUnavailable


class TransportUnavailableException(BaseStatusException):
    """The remote store could not be reached or read. The cycle is abandoned."""
    status = Status.TransportUnavailable


class TransportPartialFailureException(BaseStatusException):
    """Only some queued uploads were confirmed. The rest stay dirty."""
    status = Status.TransportPartialFailure


class LocalStoreCorruptException(BaseStatusException):
    status = Status.LocalStoreCorrupt


class CatalogInvalidException(BaseStatusException):
    status = Status.CatalogInvalid

"""CalDAV passwords kept in the OS keyring instead of config.toml."""

import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "TaskBridge"


class CredentialStore:
    """
    One keyring entry per CalDAV account, stored as ``caldav:<username>``.

    Reads never raise: a locked or missing keyring backend is reported and
    treated as "no password", so ``CalDAVConfig.get_password`` can fall back
    to the config file. Writes do raise, since the CLI has to tell the user.
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    @staticmethod
    def account(username: str) -> str:
        return f"caldav:{username}"

    def set_caldav_password(self, username: str, password: str) -> None:
        try:
            keyring.set_password(self.service_name, self.account(username), password)
        except KeyringError as e:
            logger.error(f"Keyring refused the password for {username}: {e}")
            raise
        logger.info(f"Saved CalDAV password for {username} in the keyring")

    def get_caldav_password(self, username: str) -> str | None:
        try:
            password = keyring.get_password(self.service_name, self.account(username))
        except KeyringError as e:
            logger.warning(f"Keyring unavailable, ignoring stored password for {username}: {e}")
            return None
        return password or None

    def delete_caldav_password(self, username: str) -> bool:
        """Returns False when there was nothing to delete or the keyring failed."""
        try:
            keyring.delete_password(self.service_name, self.account(username))
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            logger.error(f"Keyring could not delete the password for {username}: {e}")
            return False
        logger.info(f"Removed CalDAV password for {username} from the keyring")
        return True

    def has_caldav_password(self, username: str) -> bool:
        return self.get_caldav_password(username) is not None

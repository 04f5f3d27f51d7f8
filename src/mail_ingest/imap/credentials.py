# =============================================================================
# Credential Providers
# =============================================================================
# The mailbox client never holds a password between connects. Instead it asks
# a CredentialProvider right before LOGIN:
#
#   - KeyringCredentials: system keyring (default, same scheme as the CLI
#     `keyring set mail-ingest:<account> <username>`)
#   - EnvCredentials: a named environment variable (containers, CI)
#   - StaticCredentials: a fixed secret (tests and embedding)
#
# A missing password is reported as an authentication failure: no amount of
# retrying will make it appear, somebody has to configure it.
# =============================================================================

import os
from typing import Protocol

import keyring

from mail_ingest.core import MailboxAccount
from mail_ingest.imap.client import MailboxAuthError


class CredentialProvider(Protocol):
    """Anything that can produce the password for an account."""

    def get_password(self, account: MailboxAccount) -> str:
        ...


class KeyringCredentials:
    """Look the password up in the system keyring."""

    def get_password(self, account: MailboxAccount) -> str:
        password = keyring.get_password(account.keyring_service, account.username)
        if not password:
            raise MailboxAuthError(
                f"No password found in keyring for {account.username}. "
                f"Set it with: keyring set {account.keyring_service} {account.username}"
            )
        return password


class EnvCredentials:
    """Read the password from an environment variable."""

    def __init__(self, variable: str) -> None:
        self.variable = variable

    def get_password(self, account: MailboxAccount) -> str:
        password = os.environ.get(self.variable)
        if not password:
            raise MailboxAuthError(
                f"Environment variable {self.variable} is not set "
                f"(password for {account.username})"
            )
        return password

    def __repr__(self) -> str:
        return f"EnvCredentials({self.variable!r})"


class StaticCredentials:
    """Return a fixed password. The secret is kept out of repr()."""

    def __init__(self, password: str) -> None:
        self._password = password

    def get_password(self, account: MailboxAccount) -> str:
        return self._password

    def __repr__(self) -> str:
        return "StaticCredentials(<redacted>)"

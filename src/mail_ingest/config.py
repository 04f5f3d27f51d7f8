# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mail-ingest configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mail-ingest/  (default: ~/.config/mail-ingest/)
#   - Data:    $XDG_DATA_HOME/mail-ingest/    (default: ~/.local/share/mail-ingest/)
#
# Files:
#   - config.toml: Account, polling, retry and ledger settings
#   - deliveries.db: Delivery ledger (in data directory, only if enabled)
#
# The password is never part of the config file. It comes from the system
# keyring or from the environment variable named by `password_env`.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mail_ingest.core import SECURITY_MODES, MailboxAccount


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mail-ingest"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mail-ingest.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mail-ingest/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for mail-ingest.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/mail-ingest/
    This is where the delivery ledger lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class AccountConfig:
    """
    Mailbox connection settings.

    Attributes:
        name: Account identifier, also the keyring service suffix.
        username: IMAP login name.
        host: IMAP server hostname.
        port: IMAP port (993 for "ssl", usually 143 for "starttls").
        security: "ssl" or "starttls". Plaintext is not supported.
        folder: Folder to poll.
        timeout: I/O timeout per IMAP command, in seconds.
        password_env: If set, read the password from this environment
                      variable instead of the keyring.
    """
    name: str = "default"
    username: str = ""
    host: str = ""
    port: int = 993
    security: str = "ssl"
    folder: str = "INBOX"
    timeout: float = 30.0
    password_env: str = ""

    def to_account(self) -> MailboxAccount:
        return MailboxAccount(
            name=self.name,
            username=self.username,
            host=self.host,
            port=self.port,
            security=self.security,
            folder=self.folder,
            timeout=self.timeout,
        )


@dataclass
class PollingConfig:
    """
    Attributes:
        interval_seconds: Delay between the end of one cycle and the next.
        max_batch: Most messages handled in one cycle.
    """
    interval_seconds: float = 50.0
    max_batch: int = 10


@dataclass
class RetryConfig:
    """
    Attributes:
        max_attempts: Attempts per mailbox operation within a cycle.
        base_delay_seconds: First backoff delay.
        max_delay_seconds: Backoff ceiling.
        multiplier: Growth factor between delays.
        max_backoff_rounds: Consecutive failed cycles before giving up
                            (0 = keep trying forever).
    """
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    multiplier: float = 2.0
    max_backoff_rounds: int = 0


@dataclass
class LedgerConfig:
    """
    Attributes:
        enabled: Track acknowledged messages to avoid redelivery.
        path: Ledger database path (default: XDG data directory).
    """
    enabled: bool = False
    path: str = ""

    def resolved_path(self) -> Path:
        if self.path:
            return Path(self.path).expanduser()
        return get_xdg_data_home() / "deliveries.db"


@dataclass
class Config:
    """
    Main configuration container.

    Usage:
        >>> config = Config.load()
        >>> config.account.host
        'imap.example.com'
    """
    account: AccountConfig = field(default_factory=AccountConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load and validate configuration.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Raises:
            ConfigError: If the file is missing, invalid TOML, or fails
                         validation. A poller without a mailbox is useless,
                         so a missing file is an error, not defaults.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            raise ConfigError(
                f"Config file not found: {config_path} (create one with `mail-ingest init`)"
            )

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        config = cls._from_dict(data)
        config.validate()
        return config

    def save(self, path: Path | None = None) -> Path:
        """
        Save configuration, creating the directory if needed.

        Returns:
            The path written to.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)
        return config_path

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config object from a dictionary (parsed TOML)."""
        try:
            return cls(
                account=AccountConfig(**data.get("account", {})),
                polling=PollingConfig(**data.get("polling", {})),
                retry=RetryConfig(**data.get("retry", {})),
                ledger=LedgerConfig(**data.get("ledger", {})),
            )
        except TypeError as e:
            # Unknown keys end up as unexpected keyword arguments
            raise ConfigError(f"Unknown setting in config file: {e}") from e

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        return {
            "account": {
                "name": self.account.name,
                "username": self.account.username,
                "host": self.account.host,
                "port": self.account.port,
                "security": self.account.security,
                "folder": self.account.folder,
                "timeout": self.account.timeout,
                "password_env": self.account.password_env,
            },
            "polling": {
                "interval_seconds": self.polling.interval_seconds,
                "max_batch": self.polling.max_batch,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay_seconds": self.retry.base_delay_seconds,
                "max_delay_seconds": self.retry.max_delay_seconds,
                "multiplier": self.retry.multiplier,
                "max_backoff_rounds": self.retry.max_backoff_rounds,
            },
            "ledger": {
                "enabled": self.ledger.enabled,
                "path": self.ledger.path,
            },
        }

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check the settings for values that can never work.

        Raises:
            ConfigError: Listing every problem found.
        """
        problems = []
        for section in ("account", "polling", "retry", "ledger"):
            problems.extend(_type_problems(section, getattr(self, section)))
        if problems:
            # Range checks below assume the right types
            raise ConfigError("Invalid configuration: " + "; ".join(problems))

        if not self.account.host:
            problems.append("account.host is required")
        if not self.account.username:
            problems.append("account.username is required")
        if self.account.security not in SECURITY_MODES:
            problems.append(
                f"account.security must be one of {', '.join(SECURITY_MODES)} "
                f"(got {self.account.security!r})"
            )
        if not 0 < self.account.port < 65536:
            problems.append(f"account.port out of range: {self.account.port}")
        if self.account.timeout <= 0:
            problems.append("account.timeout must be positive")

        if self.polling.interval_seconds <= 0:
            problems.append("polling.interval_seconds must be positive")
        if self.polling.max_batch < 1:
            problems.append("polling.max_batch must be at least 1")

        if self.retry.max_attempts < 1:
            problems.append("retry.max_attempts must be at least 1")
        if self.retry.base_delay_seconds < 0:
            problems.append("retry.base_delay_seconds must not be negative")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            problems.append("retry.max_delay_seconds must be >= retry.base_delay_seconds")
        if self.retry.multiplier < 1:
            problems.append("retry.multiplier must be >= 1")
        if self.retry.max_backoff_rounds < 0:
            problems.append("retry.max_backoff_rounds must not be negative")

        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))


# TOML integers are accepted where a float is expected
_ACCEPTED_TYPES = {float: (int, float)}


def _type_problems(section: str, settings: Any) -> list[str]:
    """Report settings whose TOML value has the wrong type."""
    problems = []
    for setting in fields(settings):
        value = getattr(settings, setting.name)
        accepted = _ACCEPTED_TYPES.get(setting.type, setting.type)
        # bool is an int subclass, but `port = true` is still a mistake
        wrong_bool = isinstance(value, bool) and setting.type is not bool
        if wrong_bool or not isinstance(value, accepted):
            problems.append(
                f"{section}.{setting.name} must be {setting.type.__name__} "
                f"(got {type(value).__name__} {value!r})"
            )
    return problems


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Ledger:       {LedgerConfig().resolved_path()}")

"""Persistent upstream configuration and encrypted credential storage.

The store keeps two records in one directory:
- ``upstream_config``: plaintext JSON with the upstream host and port
- ``upstream_creds.enc``: the username, password, host and port, sealed
  with AES-GCM under a key derived from an operator passphrase

Resolving merges what is on disk with values supplied by the caller,
validates the result and writes it back. Once an encrypted record exists a
passphrase is mandatory; the absence of one raises
``PassphraseRequiredError`` so interactive callers can ask for it.

Example:
    store = CredentialStore()
    try:
        params = store.resolve(passphrase=os.environ.get("SOCKS5CHAIN_PASSWORD", ""))
    except PassphraseRequiredError:
        params = store.resolve(passphrase=ask_passphrase())
"""

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Final

from loguru import logger

from socks5_chain.core import crypto
from socks5_chain.core.exceptions import ConfigError, DecryptError, PassphraseRequiredError, ValidationError

CONFIG_DIR_ENV: Final = "SOCKS5CHAIN_CONFIG_DIR"
DEFAULT_CONFIG_DIR: Final = Path.home() / ".socks5-chain"
HOST_FILE: Final = "upstream_config"
CREDS_FILE: Final = "upstream_creds.enc"

DEFAULT_LOCAL_HOST: Final = "127.0.0.1"
DEFAULT_LOCAL_PORT: Final = 1080

# Single-byte length prefixes in the username/password sub-negotiation
MAX_CREDENTIAL_LENGTH: Final = 255
MAX_PORT: Final = 65535

DIR_MODE: Final = 0o700
FILE_MODE: Final = 0o600


@dataclass(frozen=True)
class ConnectionParameters:
    """Resolved settings shared read-only by every connection handler.

    Attributes:
        upstream_host: Hostname or IP of the upstream SOCKS5 proxy
        upstream_port: Port of the upstream SOCKS5 proxy
        username: Username presented to the upstream
        password: Password presented to the upstream
        local_host: Address the relay listens on
        local_port: Port the relay listens on
    """

    upstream_host: str
    upstream_port: int
    username: str
    password: str
    local_host: str = DEFAULT_LOCAL_HOST
    local_port: int = DEFAULT_LOCAL_PORT

    @property
    def bind_address(self) -> tuple[str, int]:
        return self.local_host, self.local_port

    @property
    def upstream_address(self) -> tuple[str, int]:
        return self.upstream_host, self.upstream_port

    def validate(self) -> "ConnectionParameters":
        """Check that every required field is usable.

        Returns:
            ConnectionParameters: ``self``, for chaining

        Raises:
            ValidationError: On the first missing or out-of-range field
        """
        if not self.upstream_host or not self.upstream_port:
            raise ValidationError("upstream host and port are required")
        if not self.username or not self.password:
            raise ValidationError("username and password are required")
        if not 0 < self.upstream_port <= MAX_PORT:
            raise ValidationError(f"upstream port out of range: {self.upstream_port}")
        # Port 0 lets the OS pick, which is only useful for tests
        if not 0 <= self.local_port <= MAX_PORT:
            raise ValidationError(f"local port out of range: {self.local_port}")
        if len(self.username.encode("utf-8")) > MAX_CREDENTIAL_LENGTH:
            raise ValidationError(f"username longer than {MAX_CREDENTIAL_LENGTH} bytes")
        if len(self.password.encode("utf-8")) > MAX_CREDENTIAL_LENGTH:
            raise ValidationError(f"password longer than {MAX_CREDENTIAL_LENGTH} bytes")
        return self


def default_config_dir() -> Path:
    """Return the configuration directory, honouring ``SOCKS5CHAIN_CONFIG_DIR``."""
    override = os.environ.get(CONFIG_DIR_ENV)
    return Path(override).expanduser() if override else DEFAULT_CONFIG_DIR


class CredentialStore:
    """Load, merge and persist upstream settings."""

    def __init__(self, config_dir: Path | str | None = None) -> None:
        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()

    @property
    def host_path(self) -> Path:
        return self.config_dir / HOST_FILE

    @property
    def creds_path(self) -> Path:
        return self.config_dir / CREDS_FILE

    def ensure_dir(self) -> None:
        """Create the configuration directory if it does not exist."""
        try:
            self.config_dir.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"failed to access {self.config_dir}: {e}") from e

    def credentials_exist(self) -> bool:
        """Whether an encrypted credential record is on disk."""
        return self.creds_path.is_file()

    def _load_credentials(self, passphrase: str) -> dict:
        try:
            blob = self.creds_path.read_bytes()
        except OSError as e:
            raise ConfigError(f"failed to access {self.creds_path}: {e}") from e
        data = crypto.decrypt(blob, passphrase)
        try:
            record = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptError(f"credential record is not valid JSON: {e}") from e
        if not isinstance(record, dict):
            raise DecryptError("credential record has unexpected shape")
        return record

    def _load_host_record(self) -> dict:
        try:
            record = json.loads(self.host_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"failed to read {self.host_path}: {e}") from e
        if not isinstance(record, dict):
            raise ConfigError(f"failed to parse {self.host_path}: expected an object")
        return record

    def resolve(
        self,
        username: str = "",
        password: str = "",
        passphrase: str = "",
        upstream_host: str = "",
        upstream_port: int = 0,
        local_host: str = DEFAULT_LOCAL_HOST,
        local_port: int = DEFAULT_LOCAL_PORT,
    ) -> ConnectionParameters:
        """Merge stored settings with explicit overrides.

        Explicit non-empty arguments win over stored values. The host record
        only fills host and port when the credential record did not.

        Args:
            username: Upstream username override
            password: Upstream password override
            passphrase: Passphrase for the encrypted credential record
            upstream_host: Upstream host override
            upstream_port: Upstream port override, 0 for none
            local_host: Address to listen on
            local_port: Port to listen on

        Returns:
            ConnectionParameters: Fully validated parameters

        Raises:
            PassphraseRequiredError: Encrypted credentials exist, passphrase empty
            DecryptError: Wrong passphrase or corrupted credential record
            ConfigError: Unreadable host record or inaccessible configuration files
            ValidationError: A required field is still missing after merging
        """
        self.ensure_dir()
        merged: dict = {"username": "", "password": "", "upstream_host": "", "upstream_port": 0}

        if self.credentials_exist():
            if not passphrase:
                raise PassphraseRequiredError("encryption password required to decrypt existing credentials")
            stored = self._load_credentials(passphrase)
            merged.update({key: stored[key] for key in merged if stored.get(key)})
            logger.debug(f"Loaded encrypted credentials from {self.creds_path}")

        if self.host_path.is_file():
            host_record = self._load_host_record()
            if not merged["upstream_host"]:
                merged["upstream_host"] = host_record.get("upstream_host") or ""
            if not merged["upstream_port"]:
                merged["upstream_port"] = host_record.get("upstream_port") or 0

        overrides = {
            "username": username,
            "password": password,
            "upstream_host": upstream_host,
            "upstream_port": upstream_port,
        }
        merged.update({key: value for key, value in overrides.items() if value})

        try:
            port = int(merged["upstream_port"])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"upstream port is not a number: {merged['upstream_port']!r}") from e

        params = ConnectionParameters(
            upstream_host=str(merged["upstream_host"]),
            upstream_port=port,
            username=str(merged["username"]),
            password=str(merged["password"]),
            local_host=local_host,
            local_port=local_port,
        ).validate()

        self.save(params, passphrase)
        return params

    def save(self, params: ConnectionParameters, passphrase: str = "") -> None:
        """Persist ``params``.

        The host record is always rewritten; the encrypted credential record
        only when a passphrase is given.
        """
        self.ensure_dir()
        host_record = {"upstream_host": params.upstream_host, "upstream_port": params.upstream_port}
        _write_private(self.host_path, json.dumps(host_record).encode("utf-8"))

        if passphrase:
            record = asdict(params)
            del record["local_host"], record["local_port"]
            sealed = crypto.encrypt(json.dumps(record).encode("utf-8"), passphrase)
            _write_private(self.creds_path, sealed)
            logger.info(f"Saved encrypted credentials to {self.creds_path}")


def _write_private(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` readable by the owner only."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(path, FILE_MODE)
    except OSError as e:
        raise ConfigError(f"failed to access {path}: {e}") from e

"""
Persistence for remote signer connections.

A SignerConnection holds the ephemeral client secret, so the file back end
encrypts every record with AES-256-GCM under a password-derived key.

## Storage Format

Each `<name>.conn` file under `~/.relaykeys/connections/` contains:
- Salt: 32 bytes (random, for PBKDF2)
- Nonce: 12 bytes (random, for AES-GCM)
- Ciphertext + tag: the SignerConnection JSON

Files are written with 600 permissions, the directory with 700.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..models import SignerConnection
from ..types import InvalidEnvelopeError, PasswordRequiredError, StorageError

logger = logging.getLogger("relaykeys.storage")

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class ConnectionStorage(ABC):
    """Interface for storing signer connections by name."""

    @abstractmethod
    async def save(self, name: str, connection: SignerConnection) -> None:
        """Store a connection, replacing any previous one with this name."""
        ...

    @abstractmethod
    async def load(self, name: str) -> Optional[SignerConnection]:
        """Load a connection, or None if nothing is stored under the name."""
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Forget a connection."""
        ...

    @abstractmethod
    async def list_names(self) -> list[str]:
        """Names of all stored connections."""
        ...


class InMemoryConnectionStorage(ConnectionStorage):
    """In-memory ConnectionStorage, for tests and short-lived processes."""

    def __init__(self) -> None:
        self._connections: dict[str, str] = {}

    async def save(self, name: str, connection: SignerConnection) -> None:
        self._connections[_check_name(name)] = connection.to_json()

    async def load(self, name: str) -> Optional[SignerConnection]:
        record = self._connections.get(name)
        return SignerConnection.from_json(record) if record is not None else None

    async def delete(self, name: str) -> None:
        self._connections.pop(name, None)

    async def list_names(self) -> list[str]:
        return sorted(self._connections)


class FileConnectionStorage(ConnectionStorage):
    """
    Password-protected file storage for signer connections.

    Example usage:
        ```python
        storage = FileConnectionStorage(password="user-password")
        await storage.save("default", session.connection)

        connection = await storage.load("default")
        session = await RemoteSignerSession.restore(connection, transport)
        ```
    """

    # PBKDF2 iteration count (OWASP recommendation for SHA256)
    PBKDF2_ITERATIONS = 100_000

    SALT_SIZE = 32
    NONCE_SIZE = 12
    TAG_SIZE = 16

    DIRECTORY_NAME = ".relaykeys/connections"

    MIN_FILE_SIZE = SALT_SIZE + NONCE_SIZE + TAG_SIZE

    def __init__(self, password: Optional[str] = None, directory: Optional[Path] = None) -> None:
        """
        Args:
            password: Password for encryption. Must be set before use.
            directory: Override for the storage directory (defaults to
                `~/.relaykeys/connections`).
        """
        self._password = password
        self._directory = directory

    def set_password(self, password: str) -> None:
        self._password = password

    def clear_password(self) -> None:
        """Clear the password from memory."""
        self._password = None

    async def save(self, name: str, connection: SignerConnection) -> None:
        """
        Raises:
            PasswordRequiredError: If no password is set.
        """
        password = self._require_password()
        directory = self._ensure_directory()

        salt = os.urandom(self.SALT_SIZE)
        nonce = os.urandom(self.NONCE_SIZE)
        aesgcm = AESGCM(self._derive_key(password, salt))
        ciphertext = aesgcm.encrypt(nonce, connection.to_json().encode("utf-8"), None)

        file_path = self._file_path(_check_name(name), directory)
        file_path.write_bytes(salt + nonce + ciphertext)
        self._set_restrictive_permissions(file_path)
        logger.debug("Saved signer connection %r", name)

    async def load(self, name: str) -> Optional[SignerConnection]:
        """
        Raises:
            PasswordRequiredError: If no password is set.
            StorageError: If the file is corrupted or the password is wrong.
        """
        password = self._require_password()
        file_path = self._file_path(_check_name(name), self._get_directory())

        if not file_path.exists():
            return None

        file_data = file_path.read_bytes()
        if len(file_data) < self.MIN_FILE_SIZE:
            raise StorageError(f"Connection file {file_path.name} is truncated")

        salt = file_data[: self.SALT_SIZE]
        nonce = file_data[self.SALT_SIZE : self.SALT_SIZE + self.NONCE_SIZE]
        ciphertext = file_data[self.SALT_SIZE + self.NONCE_SIZE :]

        try:
            plaintext = AESGCM(self._derive_key(password, salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise StorageError("Decryption failed - incorrect password or corrupted data") from e

        try:
            return SignerConnection.from_json(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, InvalidEnvelopeError) as e:
            raise StorageError(f"Connection file {file_path.name} is corrupted") from e

    async def delete(self, name: str) -> None:
        file_path = self._file_path(_check_name(name), self._get_directory())
        if file_path.exists():
            file_path.unlink()

    async def list_names(self) -> list[str]:
        directory = self._get_directory()
        if not directory.exists():
            return []
        return sorted(f.stem for f in directory.iterdir() if f.suffix == ".conn")

    def _require_password(self) -> str:
        if not self._password:
            raise PasswordRequiredError()
        return self._password

    def _get_directory(self) -> Path:
        return self._directory or Path.home() / self.DIRECTORY_NAME

    def _ensure_directory(self) -> Path:
        directory = self._get_directory()
        directory.mkdir(parents=True, exist_ok=True)
        try:
            directory.chmod(0o700)
        except OSError:
            pass  # Ignore permission errors on some platforms
        return directory

    def _file_path(self, name: str, directory: Path) -> Path:
        return directory / f"{name}.conn"

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    def _set_restrictive_permissions(self, file_path: Path) -> None:
        try:
            file_path.chmod(0o600)
        except OSError:
            pass  # Ignore permission errors on some platforms


def _check_name(name: str) -> str:
    if not _NAME_PATTERN.match(name):
        raise StorageError(f"Invalid connection name: {name!r}")
    return name

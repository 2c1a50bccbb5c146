"""
Secret store for provider credentials.

The engine only ever reads secrets by name; values are never logged.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Protocol, runtime_checkable

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger(__name__)


@runtime_checkable
class SecretStore(Protocol):
    """Opaque secret store keyed by name."""

    def get(self, name: str) -> str | None: ...

    def set(self, name: str, secret: str) -> bool: ...

    def delete(self, name: str) -> bool: ...


class MemorySecretStore:
    """In-process secret store, used for tests and one-off runs."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(initial or {})
        self._lock = RLock()

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._secrets.get(name)

    def set(self, name: str, secret: str) -> bool:
        if not secret:
            return False
        with self._lock:
            self._secrets[name] = secret
        return True

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._secrets.pop(name, None) is not None


@dataclass
class EncryptionConfig:
    """Encryption file layout"""

    key_file: str = "secrets.key"
    secrets_file: str = "secrets.json.encrypted"

    def generate_key(self) -> bytes:
        return Fernet.generate_key()

    def get_key_path(self, secrets_dir: Path) -> Path:
        return secrets_dir / self.key_file

    def get_secrets_path(self, secrets_dir: Path) -> Path:
        return secrets_dir / self.secrets_file


class EncryptedFileSecretStore:
    """Fernet-encrypted JSON file of named secrets."""

    def __init__(
        self, secrets_dir: Path, encryption_config: EncryptionConfig | None = None
    ) -> None:
        self.secrets_dir = Path(secrets_dir)
        self.secrets_dir.mkdir(parents=True, exist_ok=True)
        self.encryption_config = encryption_config or EncryptionConfig()
        self._encryption_key: bytes | None = None
        self._cache: dict[str, str] | None = None
        self._lock = RLock()

    def _get_encryption_key(self) -> bytes:
        """Return the encryption key, generating it on first use."""
        if self._encryption_key is not None:
            return self._encryption_key

        key_path = self.encryption_config.get_key_path(self.secrets_dir)

        if key_path.exists():
            self._encryption_key = key_path.read_bytes()
        else:
            self._encryption_key = self.encryption_config.generate_key()
            key_path.write_bytes(self._encryption_key)

            # owner read/write only
            if hasattr(os, "chmod"):
                key_path.chmod(0o600)

            logger.info("Generated new secret store key", key_file=str(key_path))

        return self._encryption_key

    def _load(self) -> dict[str, str]:
        if self._cache is not None:
            return self._cache

        secrets_path = self.encryption_config.get_secrets_path(self.secrets_dir)
        if not secrets_path.exists():
            self._cache = {}
            return self._cache

        fernet = Fernet(self._get_encryption_key())
        try:
            payload = fernet.decrypt(secrets_path.read_bytes()).decode("utf-8")
        except InvalidToken:
            logger.error(
                "Secret store could not be decrypted", path=str(secrets_path)
            )
            self._cache = {}
            return self._cache

        data = json.loads(payload)
        self._cache = {str(k): str(v) for k, v in data.items()}
        return self._cache

    def _save(self, secrets: dict[str, str]) -> None:
        fernet = Fernet(self._get_encryption_key())
        encrypted = fernet.encrypt(json.dumps(secrets).encode("utf-8"))

        secrets_path = self.encryption_config.get_secrets_path(self.secrets_dir)
        secrets_path.write_bytes(encrypted)
        if hasattr(os, "chmod"):
            secrets_path.chmod(0o600)

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._load().get(name)

    def set(self, name: str, secret: str) -> bool:
        if not secret:
            return False
        with self._lock:
            secrets = dict(self._load())
            secrets[name] = secret
            try:
                self._save(secrets)
            except OSError as e:
                logger.error("Failed to save secret", name=name, error=str(e))
                return False
            self._cache = secrets
        logger.info("Secret stored", name=name)
        return True

    def delete(self, name: str) -> bool:
        with self._lock:
            secrets = dict(self._load())
            if name not in secrets:
                return False
            del secrets[name]
            try:
                self._save(secrets)
            except OSError as e:
                logger.error("Failed to delete secret", name=name, error=str(e))
                return False
            self._cache = secrets
        logger.info("Secret deleted", name=name)
        return True

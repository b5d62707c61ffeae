"""Password persistence for the embedded server's superuser."""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 32


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    # token_urlsafe never yields characters that need quoting in a pwfile.
    return secrets.token_urlsafe(length)[:length]


@dataclass(frozen=True, slots=True)
class PasswordStore:
    """Read and write the password file shared between runs."""

    path: Path

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> str | None:
        if not self.exists():
            return None
        password = self.path.read_text(encoding="utf-8").rstrip("\r\n")
        return password or None

    def save(self, password: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(password, encoding="utf-8")
        try:
            os.chmod(self.path, 0o600)
        except PermissionError:
            logger.debug("Unable to restrict permissions on %s", self.path, exc_info=True)

    def load_or_generate(self) -> str:
        """Return the stored password, or a fresh one that is not yet persisted."""

        stored = self.load()
        if stored is not None:
            return stored
        return generate_password()


__all__ = ["PASSWORD_LENGTH", "PasswordStore", "generate_password"]

import hashlib
import socket
from pathlib import Path


def str_to_bool(value: str | bool | int | None) -> bool:
    """Convert common truthy / falsy strings and values to `bool`."""

    truthy_values = {"true", "1", "yes", "y", "t", "on"}
    falsy_values = {"false", "0", "no", "n", "f", "off"}

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if not isinstance(value, str):
        raise ValueError(f"Cannot convert '{value}' to a boolean.")

    value = value.strip().lower()

    if value in truthy_values:
        return True
    if value in falsy_values:
        return False
    raise ValueError(f"Cannot convert '{value}' to a boolean.")


def find_free_port() -> int:
    """Return an available TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def resolve_under(base: Path, configured: str | Path) -> Path:
    """Resolve ``configured`` relative to ``base`` unless it is absolute."""

    candidate = Path(configured).expanduser()
    if candidate.is_absolute():
        return candidate.resolve(strict=False)
    return (base / candidate).resolve(strict=False)

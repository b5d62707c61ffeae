"""Installation and activation of the ``vectors`` extension."""

from embedded_vectors.extension.activation import (
    configure_extension,
    enable_extension,
    extension_enabled,
)
from embedded_vectors.extension.installer import ExtensionSettings, install, is_installed


__all__ = [
    "ExtensionSettings",
    "configure_extension",
    "enable_extension",
    "extension_enabled",
    "install",
    "is_installed",
]

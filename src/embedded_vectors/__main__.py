"""Entry point for running embedded-vectors as a module."""

from __future__ import annotations

from embedded_vectors.cli import main


if __name__ == "__main__":
    main()

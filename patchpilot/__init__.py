"""PATCHPILOT: autonomous code-change orchestration."""

from patchpilot.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]

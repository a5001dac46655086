"""Cache-aware synchronization of leyline standards into a project."""

from .constants import TOOL_VERSION as __version__

__all__ = ["__version__"]

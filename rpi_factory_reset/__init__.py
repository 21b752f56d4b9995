"""Self-healing factory reset for Raspberry Pi boot media."""

from .__version__ import __version__

__all__ = ["__version__"]

"""Version information for rpi-factory-reset."""

__version__ = "1.2.0"

"""Course generation pipeline core."""

__version__ = "1.0.0"

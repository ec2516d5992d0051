"""Task dispatch and triggering core."""

__version__ = "0.1.0"

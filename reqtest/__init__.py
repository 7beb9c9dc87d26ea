"""Listen for, or send, HTTP requests with growing payload sizes."""

from reqtest.__version__ import __version__

__all__ = ["__version__"]

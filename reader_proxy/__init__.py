"""Offline-capable caching reverse proxy for the reader web app"""

__version__ = "1.0.0"

"""Task tracker core that mirrors a remote document store and survives its outages."""

__version__ = "0.1.0"

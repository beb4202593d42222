"""Anonymous message relay bot for Telegram."""

__version__ = "0.3.0"

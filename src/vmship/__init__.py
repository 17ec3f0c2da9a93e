"""vmship: provision a small VM stack and deploy containers onto it."""

__version__ = "0.1.0"

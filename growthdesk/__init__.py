"""Growthdesk: affiliate commission and email sequence engines."""

__version__ = "1.0.0"

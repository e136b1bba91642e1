"""Concierge - entity resolution and plan execution engine for a personal assistant."""
__version__ = "0.1.0"

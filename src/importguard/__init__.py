"""importguard: tombstones that keep deleted contacts from being re-imported."""

__version__ = "0.1.0"

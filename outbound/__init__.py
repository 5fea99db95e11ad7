"""Outbound SMS messages and their asynchronous delivery pipeline."""

__version__ = "1.0.0"

"""Linkist NFC card ordering service."""

__version__ = "0.1.0"

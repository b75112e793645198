"""Zoom App authentication gateway: PKCE install flow + app context verification."""

__version__ = "0.1.0"

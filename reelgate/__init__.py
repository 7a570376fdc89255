"""Reelgate - session and credential security for a self-hosted media-request server."""

__version__ = "0.1.0"

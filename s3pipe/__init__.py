"""Streaming object transfer client for S3-compatible storage."""

__version__ = "0.1.0"

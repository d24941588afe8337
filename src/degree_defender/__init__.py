"""Degree Defender community notes service."""

__version__ = "0.1.0"

"""Thinkbot: real-time chat relay to an upstream text-generation API."""

__version__ = "0.1.0"

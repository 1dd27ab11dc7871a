"""chat-export-service: capture a rendered chat transcript and export it."""

__version__ = "0.1.0"

"""HTTP delivery of lecture audio recordings."""

__version__ = "0.1.0"

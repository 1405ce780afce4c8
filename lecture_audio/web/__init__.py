"""Web layer exposing the audio delivery endpoints."""

from .server import create_app

__all__ = ["create_app"]

"""FastAPI surface for the Revive pipeline."""

from .app import create_app

__all__ = ["create_app"]

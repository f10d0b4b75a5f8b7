"""Revive: autonomous legacy-codebase migration pipeline."""

__version__ = "0.1.0"

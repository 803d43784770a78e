"""Murmuration services."""

from .engine import MurmurationService

__all__ = ["MurmurationService"]

"""Storage package initialization."""

from .database import ThreatIntelDB

__all__ = ['ThreatIntelDB']

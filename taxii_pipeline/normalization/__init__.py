"""Normalization package initialization."""

from .normalizer import IOCNormalizer, determine_severity
from .patterns import PatternEvaluator

__all__ = ['IOCNormalizer', 'PatternEvaluator', 'determine_severity']

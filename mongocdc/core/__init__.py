"""
Utility functions for core operations.
"""

from .bson_convert import simplify

__all__ = ["simplify"]

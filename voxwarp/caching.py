"""
Read-only properties computed once per object.

Geometry objects in voxwarp are immutable, so quantities derived from their
matrices (inverse, spacing, rotation) are computed on first access and kept.
"""

from __future__ import annotations

import functools


def cached(func: callable) -> property:
    """
    Decorator that converts a method into a read-only property whose value is
    stored in `self._property_cache` after the first access.
    """
    @functools.wraps(func)
    def wrapper(self):
        cache = self._property_cache
        if func.__name__ not in cache:
            cache[func.__name__] = func(self)
        return cache[func.__name__]
    return property(wrapper)


def init_property_cache(obj: object) -> None:
    """
    Initializes the property cache for an object with properties using
    the `cached` decorator.
    """
    if not hasattr(obj, '_property_cache'):
        obj._property_cache = {}


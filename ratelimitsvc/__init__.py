"""Descriptor-based rate limit configuration, cache keys, local cache and limit decisions."""

__version__ = "0.1.0"
__all__ = ["__version__"]
"""Keyed checkout cache and install stamp store."""

from .keys import InstallCacheInput, build_key, cache_key
from .store import BuildLayout, CheckoutStore, InstallCacheStore

__all__ = [
    "BuildLayout",
    "CheckoutStore",
    "InstallCacheInput",
    "InstallCacheStore",
    "build_key",
    "cache_key",
]

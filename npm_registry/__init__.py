"""
Local npm-compatible package registry.

Serves package metadata and tarballs from a directory on disk and
transparently proxies (and caches) misses from an upstream registry.
"""

__version__ = "0.1.0"

"""
On-disk persistence for the registry.

This package is responsible for:
* Reading and writing one JSON document per package under the registry root.
* Keeping the counters in registry.json in step with those documents.
* Upgrading the older single-file registry.json layout.
"""

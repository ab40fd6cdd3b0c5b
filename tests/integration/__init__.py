"""
Integration tests.

These talk to a live Redis and are skipped unless ``USE_REAL_REDIS`` is set.
"""

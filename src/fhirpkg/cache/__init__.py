"""On-disk package cache, its side index and the per-package lock."""

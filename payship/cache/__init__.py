"""Redis-backed caching."""

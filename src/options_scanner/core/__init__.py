"""Core infrastructure: records, cache, config, persistence, logging."""

"""Upstream data access: throttled provider client, live and synthetic sources."""

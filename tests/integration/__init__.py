"""
Integration tests.

These wire the full service over the in-memory store and exercise flows
that cross components: concurrent writers, plan limits and registry
refreshes. They need no external services.
"""

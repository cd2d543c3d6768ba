"""Tests for the ranking core.

Everything here runs against in-memory fakes (vector store, redis client,
embedding provider), so no external services are required.
"""

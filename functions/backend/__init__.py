"""
Backend package for the backup connector service.

This package provides the FastAPI application, settings and the shared
key/value store the connector keeps its session token, lock, rate-limit
window and cache envelopes in.
"""

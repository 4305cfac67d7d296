"""
Backend package for the brewlog API.

This package provides a FastAPI application for logging coffees and brews,
with database, asset storage and lock abstractions so the same code runs
against in-memory backends in tests and Postgres/S3/Redis in production.
"""

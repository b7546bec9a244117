"""Integration tests for the school election service.

This package contains integration tests that drive the FastAPI application
over HTTP, including:

- Session and registration endpoints
- End-to-end vote flow with caps, duplicates and resets
- Administrative election setup and tallies
- Error mapping for storage failures
- PostgreSQL backend tests (require a reachable database)
"""

__version__ = "1.0.0"

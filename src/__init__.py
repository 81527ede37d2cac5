"""
Session Audio - chunked recording ingestion and reconciliation.

This package contains the complete application:
- core: Framework-agnostic audio pipeline logic
- infrastructure: Object storage and database integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"

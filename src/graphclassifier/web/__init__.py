"""JSON API for the graph rule classifier.

Provides a FastAPI application for:
- Rule management (create, update, list, delete)
- Single-thread and bulk classification
- Health checks
"""

from graphclassifier.web.app import create_app

__all__ = ["create_app"]

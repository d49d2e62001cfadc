"""
Middleware components for request processing.

This package contains middleware for:
- Request context (request ID, structlog context binding)
- CORS for the browser front-end
"""

from crm_enricher.middleware.cors import CORSMiddleware
from crm_enricher.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
    "CORSMiddleware",
]

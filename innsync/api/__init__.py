"""HTTP API for the innsync service.

This module contains:
- Application factory and default app instance
- Amendment ingress and management routes
- Webhook endpoint management routes
"""

from innsync.api.routes import app, create_app

__all__ = [
    "app",
    "create_app",
]

"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from chatbridge.api.routes import chat, connections, keys, webhooks

__all__ = [
    "chat",
    "connections",
    "keys",
    "webhooks",
]

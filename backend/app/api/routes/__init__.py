# API Routes Module
from app.api.routes import (
    admin,
    chat,
    cron,
    subscriptions,
    webhooks,
)

__all__ = [
    "admin",
    "chat",
    "cron",
    "subscriptions",
    "webhooks",
]

"""HTTP routers for the webhook, read API and health checks."""
from . import analyses, calls, health, notifications, reports, webhook

ROUTERS = (
    webhook.router,
    health.router,
    calls.router,
    analyses.router,
    reports.router,
    notifications.router,
)

__all__ = ["ROUTERS"]

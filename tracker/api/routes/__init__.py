"""Route modules exposed by the API package."""

from . import cron, ping, tickets

__all__ = ["cron", "ping", "tickets"]

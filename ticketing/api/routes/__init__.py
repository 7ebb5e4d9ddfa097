"""Route modules exposed by the API package."""

from . import approvals, dashboard, integrations, ping, pm, tickets

__all__ = ["approvals", "dashboard", "integrations", "ping", "pm", "tickets"]

"""devloop: development-time build orchestrator for client/server web projects."""

__version__ = "0.1.0"

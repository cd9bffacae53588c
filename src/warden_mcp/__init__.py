"""Warden MCP: coordinated execution of external CLI processes."""

__version__ = "0.1.0"

__all__ = ["__version__"]

"""Core primitives shared by every service (exception hierarchy)."""

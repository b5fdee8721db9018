"""
Portfolio Governance Engine
Middleware: structured logging and evaluation timing.
"""

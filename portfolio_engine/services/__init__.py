"""
Portfolio Governance Engine
Services: constraint evaluation, capacity grid, projection, metrics,
decision log and the governance engine.
"""

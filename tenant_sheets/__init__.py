"""
Multi-tenant data-access layer over a rate-limited sheet store.
"""

__version__ = "1.0.0"

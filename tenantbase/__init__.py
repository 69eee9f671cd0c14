"""
tenantbase - isolated PostgreSQL tenants on demand.
"""

__version__ = "1.0.0"

"""
crm_sync - One-way contact synchronization from a CRM into a local store.

Pulls contacts from the CRM page by page and merges them into a local
SQLite store keyed by (CRM contact id, owner scope), leaving locally owned
fields untouched.
"""

__version__ = "0.1.0"

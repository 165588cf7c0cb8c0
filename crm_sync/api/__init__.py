"""CRM API client package."""

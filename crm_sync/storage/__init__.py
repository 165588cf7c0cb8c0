"""Local SQLite store package."""

"""Adapters implementing the core ports (SQLite persistence, email delivery)."""

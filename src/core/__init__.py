"""Core domain package for duewatch.

Core contains day arithmetic, rule evaluation, leasing and the alert job
without any SQLite or SMTP-specific code, keeping the business logic portable.
"""

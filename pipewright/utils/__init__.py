"""Shared utilities: logging setup, async subprocess helpers and retry."""

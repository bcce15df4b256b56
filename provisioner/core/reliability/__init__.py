"""Retry policy for idempotent steps."""

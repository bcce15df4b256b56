"""Logging setup and progress events."""

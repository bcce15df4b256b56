"""Service manager operations."""

"""OS package manager operations."""

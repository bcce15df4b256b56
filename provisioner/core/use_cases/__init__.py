"""Use cases — one function per CLI command."""

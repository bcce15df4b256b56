"""TLS certificate lookup."""

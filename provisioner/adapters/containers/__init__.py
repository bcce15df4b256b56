"""Container runtime operations."""

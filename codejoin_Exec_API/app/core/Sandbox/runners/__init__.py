"""Container runtime adapters for sandboxes."""

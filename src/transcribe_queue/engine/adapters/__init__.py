"""Model backend adapters and their registry."""

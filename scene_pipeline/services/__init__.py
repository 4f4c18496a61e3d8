"""Scene media services."""

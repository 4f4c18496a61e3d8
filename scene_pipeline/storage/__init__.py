"""Scene and object storage."""

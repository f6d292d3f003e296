"""Local persistence: key/value store, partition cache, overlays."""

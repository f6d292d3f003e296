"""Viewport-driven partition loading and idle eviction."""

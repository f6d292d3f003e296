"""Geometry, data model and partition catalog."""

"""Density-cluster overlays."""

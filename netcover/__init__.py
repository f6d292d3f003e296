"""netcover: spatial partition cache and density-cluster overlays for
internet-service availability maps."""

__version__ = "0.3.0"

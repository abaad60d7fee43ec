"""REST API for the volume autoscaler."""

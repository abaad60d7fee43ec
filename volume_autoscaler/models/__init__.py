"""Data structures shared across the autoscaler."""

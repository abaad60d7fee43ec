"""The VolumeAutoscaler reconciliation engine."""

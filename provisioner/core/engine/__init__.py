"""Engine — registry, probe, writer and scheduler."""

"""Environment-driven configuration for PatchPilot."""

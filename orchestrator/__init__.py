"""Command line entry point and task log for MediTrack."""

"""Read-only web dashboard over the MediTrack data directory."""

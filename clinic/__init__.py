"""Domain rules of MediTrack: entities, scheduling and the appointment status machine."""

"""Real-time coordination and messaging relay for virtual consultations."""

"""Domain services for the experimentation engine."""

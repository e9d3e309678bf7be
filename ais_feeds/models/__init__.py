"""Domain models for the scene-search feed."""

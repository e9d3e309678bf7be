"""Small shared helpers for day identifiers and bounding boxes."""

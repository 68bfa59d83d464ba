"""Domain models (value objects and job lifecycle types)."""

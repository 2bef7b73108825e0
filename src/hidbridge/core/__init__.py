"""Core data model and error taxonomy (pure Python, no USB imports)."""

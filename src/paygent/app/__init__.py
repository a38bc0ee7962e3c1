"""Pipeline engine and its collaborators."""

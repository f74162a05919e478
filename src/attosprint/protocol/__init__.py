"""On-disk data model, JSON helpers and collaborator contracts."""

"""Runtime configuration loaded from YAML."""

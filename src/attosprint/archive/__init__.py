"""Agent session archive."""

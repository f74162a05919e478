"""Agent process handles and spawners."""

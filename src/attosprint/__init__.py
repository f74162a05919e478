"""attosprint: supervisor for autonomous coding-agent processes."""

__version__ = "0.1.0"

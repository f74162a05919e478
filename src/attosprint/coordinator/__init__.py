"""Workflow resolution, agent lifecycle, recovery and the driving loop."""

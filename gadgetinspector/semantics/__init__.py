"""Taint interpretation of method bodies and the passthrough analysis."""

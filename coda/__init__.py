"""Coda: turn execution engine for a terminal coding assistant."""

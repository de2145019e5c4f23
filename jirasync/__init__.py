"""Incremental Jira synchronization engine with time-windowed planning and changelog history."""

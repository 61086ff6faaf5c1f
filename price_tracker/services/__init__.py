"""Persistence and notification services."""

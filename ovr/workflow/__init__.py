"""Incident workflow: status taxonomy and panel selection."""

"""Checkpoint item collections."""

"""Collaborators backing the chat pipeline."""

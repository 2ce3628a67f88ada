"""Collaborator interfaces and their default implementations."""

"""Collaborator contracts for content, terms and source weights."""

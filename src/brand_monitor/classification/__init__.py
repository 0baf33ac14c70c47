"""Sentiment classifier collaborators."""

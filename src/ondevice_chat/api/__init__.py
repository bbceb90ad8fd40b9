"""Presentation surface over a chat session."""

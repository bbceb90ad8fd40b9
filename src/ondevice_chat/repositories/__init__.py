"""Persistence capabilities keyed by model identifier."""

"""Inference engine contracts and implementations."""

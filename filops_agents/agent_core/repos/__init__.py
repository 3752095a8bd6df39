"""Persistence contracts and their SQL implementation."""

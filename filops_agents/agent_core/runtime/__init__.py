"""Compliance runtime: deficit computation, the periodic loop and its scheduler."""

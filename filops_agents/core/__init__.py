"""Ambient concerns shared across the agents: settings, logging, errors."""

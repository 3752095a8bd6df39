"""Domain schemas shared across the agent core."""

"""Configuration modules (plain Python constants)."""

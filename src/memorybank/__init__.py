"""Spaced-repetition memory bank backend."""

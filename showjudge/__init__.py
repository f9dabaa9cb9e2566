"""Voting lifecycle and results aggregation for judged shows."""

__version__ = "0.1.0"

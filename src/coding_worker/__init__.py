"""Coding worker: turns coding tasks into branches and pull requests."""

__version__ = "0.1.0"

"""Ockham project-economics calculation engine."""

__version__ = "0.1.0"

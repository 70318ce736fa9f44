"""Utility modules for the identity core."""

"""Utility functions for relaybot."""

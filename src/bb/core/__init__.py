"""Core functionality for bb."""

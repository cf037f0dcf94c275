"""Utility modules for bb."""

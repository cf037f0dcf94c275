"""Command modules for bb."""

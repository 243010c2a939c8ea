"""Outer surfaces."""

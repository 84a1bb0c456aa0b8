"""Kernel coverage extraction from compiled objects."""

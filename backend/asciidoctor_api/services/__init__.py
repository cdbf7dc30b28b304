"""Conversion services."""

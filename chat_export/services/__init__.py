"""Extraction and export services."""

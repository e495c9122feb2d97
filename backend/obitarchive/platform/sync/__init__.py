"""Catalog reconciliation."""

"""Image ingestion and catalog-backed image operations."""

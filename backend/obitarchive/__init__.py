"""Obituary archive backend."""

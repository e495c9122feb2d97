"""Obituary archive assembly."""

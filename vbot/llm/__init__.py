"""Prompt building, upstream model streaming and the client frame protocol."""

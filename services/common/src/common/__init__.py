"""Shared infrastructure: settings, structured logging and HTTP client helpers."""

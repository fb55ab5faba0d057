"""Shared helpers: logging, errors, retries and HTTP."""

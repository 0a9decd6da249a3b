"""Shared utilities: subprocess execution, retries, logging, HTTP pools."""

"""Credential provider implementations."""

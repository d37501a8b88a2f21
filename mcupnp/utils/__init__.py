"""Shared utilities for mcupnp."""

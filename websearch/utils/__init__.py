"""Shared utilities: configuration, exceptions and data models."""

"""Configuration data models."""

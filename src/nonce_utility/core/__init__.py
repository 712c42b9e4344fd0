"""Configuration, errors and token generation."""

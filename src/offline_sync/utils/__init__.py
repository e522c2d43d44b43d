"""Ambient utilities: logging, errors, configuration and notifications."""

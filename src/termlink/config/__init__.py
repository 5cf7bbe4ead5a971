"""Configuration management for termlink.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides for secrets like the token
signing key and OAuth client credentials.
"""

from termlink.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]

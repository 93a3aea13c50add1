"""Configuration package for the Libra monitor."""

from .settings import CONFIG_PATH, ScaleSettings, Settings

__all__ = ["CONFIG_PATH", "ScaleSettings", "Settings"]

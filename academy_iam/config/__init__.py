"""Configuration module for the Academy IAM service."""
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "load_settings"]

"""Configuration module for autobuild."""

from autobuild.config.loader import load_config
from autobuild.config.schema import ARCHITECTURES, Config, RepoConfig, ToolsConfig

__all__ = ["ARCHITECTURES", "Config", "RepoConfig", "ToolsConfig", "load_config"]

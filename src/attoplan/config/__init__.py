"""Configuration for attoplan."""

from attoplan.config.loader import load_config
from attoplan.config.schema import AttoplanConfig

__all__ = ["AttoplanConfig", "load_config"]

"""
This module defines the configuration schema for the SonarQube stack builder.
The dataclasses document the keys accepted in config.yaml; load_config reads and checks them.
"""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Any

import yaml

REQUIRED_KEYS = ["team", "service", "environment", "region"]

@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    revision: Optional[int] = None
    tags: Optional[Dict[str, str]] = None
    availability_zones: Optional[List[str]] = None
    network_cidr: Optional[str] = None
    secret_key: Optional[str] = None
    repository_context_key: Optional[str] = None
    image_tag: Optional[str] = None
    context: Dict[str, str] = field(default_factory=dict)

def load_config(file_path: str) -> Dict[str, Any]:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration in {file_path} must be a mapping")

    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ValueError(f"Missing required configuration key: {key}")

    revision = config_data.get("revision")
    # YAML booleans are ints in Python
    if revision is not None and (isinstance(revision, bool) or not isinstance(revision, int)):
        raise ValueError(f"Configuration key 'revision' must be an integer, got {revision!r}")

    context = config_data.get("context")
    if context is not None and not isinstance(context, dict):
        raise ValueError("Configuration key 'context' must be a mapping")

    return config_data

def to_config(config_data: Dict[str, Any]) -> Config:
    """Build a Config from loaded YAML, ignoring keys the schema does not know."""
    known = {f.name for f in fields(Config)}
    values = {k: v for k, v in config_data.items() if k in known and v is not None}
    return Config(**values)

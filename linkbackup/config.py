"""
Configuration loading.

The configuration is a JSON file listing links, each pairing a source
directory with the destination its versions are written to::

    {
        "follow_symlinks": false,
        "full_hash": false,
        "workers": 2,
        "links": [
            {"name": "documents", "source": "$HOME/Documents", "destination": "documents"}
        ]
    }

A bare list of link objects is accepted as well. Paths may reference
environment variables and ``~``; relative paths are taken from the
directory holding the configuration file. Every ``$name`` or ``${name}``
written in a path names an environment variable, so a literal dollar sign
followed by a name cannot be used in a configured path.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError


logger = logging.getLogger('linkbackup')

DEFAULT_CONFIG_PATH = Path('.backup') / 'config.json'

_VAR_REFERENCE = re.compile(r'\$(?:(\w+)|\{([^}]*)\})')


@dataclass(frozen=True)
class Link:
    """A source directory and the destination holding its versions."""
    name: str
    source: Path
    destination: Path


@dataclass
class Config:
    links: List[Link] = field(default_factory=list)
    follow_symlinks: bool = False
    full_hash: bool = False
    workers: int = 1

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not self.links:
            raise ConfigError("No links configured")
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ConfigError(f"workers must be a positive integer, got {self.workers!r}")

        names = set()
        destinations = set()
        for link in self.links:
            if link.name in names:
                raise ConfigError(f"Duplicate link name '{link.name}'")
            names.add(link.name)

            destination = os.path.normcase(os.path.abspath(link.destination))
            if destination in destinations:
                raise ConfigError(f"Destination '{link.destination}' is used by more than one link")
            destinations.add(destination)

            if destination == os.path.normcase(os.path.abspath(link.source)):
                raise ConfigError(f"Link '{link.name}' uses its source as destination")

    def get_link(self, name: str) -> Link:
        for link in self.links:
            if link.name == name:
                return link
        raise ConfigError(f"No link named '{name}'")

    def select(self, name: Optional[str] = None) -> List[Link]:
        """All links, or only the one with the given name."""
        if name is None:
            return list(self.links)
        return [self.get_link(name)]


def expand_path(value: str, base_dir: Path) -> Path:
    """
    Expand environment variables and ``~`` in a configured path.

    Raises:
        ConfigError: If a referenced environment variable is not set
    """
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Invalid path value: {value!r}")

    # Checked on the raw value: expanded variables may themselves contain "$".
    for match in _VAR_REFERENCE.finditer(value):
        name = match.group(1) or match.group(2)
        if name not in os.environ:
            raise ConfigError(f"Environment variable {match.group(0)} in '{value}' is not set")

    path = Path(os.path.expanduser(os.path.expandvars(value)))
    if not path.is_absolute():
        path = base_dir / path
    return path


def parse_config(data: Any, base_dir) -> Config:
    """Build a Config from decoded JSON data."""
    base_dir = Path(base_dir)
    if isinstance(data, list):
        data = {"links": data}
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be an object or a list of links")

    raw_links = data.get("links")
    if not isinstance(raw_links, list):
        raise ConfigError("Configuration needs a 'links' list")

    links = []
    for index, raw in enumerate(raw_links):
        if not isinstance(raw, dict):
            raise ConfigError(f"Link #{index + 1} must be an object")
        try:
            source = expand_path(raw["source"], base_dir)
            destination = expand_path(raw["destination"], base_dir)
        except KeyError as e:
            raise ConfigError(f"Link #{index + 1} is missing '{e.args[0]}'") from e
        name = raw.get("name") or destination.name
        links.append(Link(name=str(name), source=source, destination=destination))

    options: Dict[str, Any] = {}
    for key in ("follow_symlinks", "full_hash"):
        if key in data:
            if not isinstance(data[key], bool):
                raise ConfigError(f"'{key}' must be true or false")
            options[key] = data[key]
    if "workers" in data:
        options["workers"] = data["workers"]

    return Config(links=links, **options)


def load_config(config_path=DEFAULT_CONFIG_PATH) -> Config:
    """
    Load and validate a configuration file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = Path(config_path)
    logger.debug(f"Config file location: '{config_path}'")
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file '{config_path}' not found") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file '{config_path}': {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Cannot parse configuration file '{config_path}': {e}") from e

    config = parse_config(data, config_path.resolve().parent)
    logger.info(f"Loaded {len(config.links)} links from '{config_path}'")
    return config

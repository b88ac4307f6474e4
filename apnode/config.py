# apnode/config.py
"""
Node configuration.

Values come from (lowest to highest precedence) dataclass defaults, a YAML
file, APNODE_* environment variables and finally explicit overrides
(usually CLI flags).

Example config.yaml:

    base_url: https://grassroots.example.org
    data_dir: /var/lib/apnode
    delivery_timeout: 5
    follower_mode: set
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "APNODE_"
FOLLOWER_MODES = ("set", "log")
MIN_KEY_SIZE = 2048


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class NodeConfig:
    """
    Settings for one node.

    Attributes:
        base_url: Public origin of this node; actor URIs hang off it
        data_dir: Root directory for keys, mailboxes and follower sets
        key_size: RSA modulus size for new actors
        delivery_timeout: Seconds to wait for the remote inbox hop
        network_delivery: Whether send() performs the HTTP push at all
        follower_mode: "set" deduplicates follows, "log" keeps every one
        verify_inbound_signatures: Check Signature headers on POST /inbox
    """
    base_url: str = "http://localhost:3000"
    data_dir: str = "./apnode_data"
    key_size: int = 2048
    delivery_timeout: float = 10.0
    network_delivery: bool = True
    follower_mode: str = "set"
    verify_inbound_signatures: bool = False

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        self.validate()

    def validate(self) -> None:
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"base_url must be an http(s) origin: {self.base_url!r}")
        if self.key_size < MIN_KEY_SIZE:
            raise ValidationError(f"key_size must be at least {MIN_KEY_SIZE}")
        if self.delivery_timeout <= 0:
            raise ValidationError("delivery_timeout must be positive")
        if self.follower_mode not in FOLLOWER_MODES:
            raise ValidationError(
                f"follower_mode must be one of {', '.join(FOLLOWER_MODES)}"
            )

    @property
    def host(self) -> str:
        """Host name used in the Host header and the signed string."""
        return urlparse(self.base_url).netloc

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "NodeConfig":
        data = yaml.safe_load(yaml_content) or {}
        if not isinstance(data, dict):
            raise ValidationError("Config file must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Path | str) -> "NodeConfig":
        with open(path) as f:
            return cls.from_yaml(f.read())

    @classmethod
    def load(
        cls,
        path: Optional[Path | str] = None,
        environ: Optional[Dict[str, str]] = None,
        **overrides: Any,
    ) -> "NodeConfig":
        """
        Build a config from file, environment and overrides.

        Overrides whose value is None are ignored so argparse defaults
        don't clobber file settings.
        """
        data: Dict[str, Any] = {}
        if path:
            data.update(cls.from_file(path).to_dict())

        environ = os.environ if environ is None else environ
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.type in (bool, "bool"):
                data[f.name] = _parse_bool(raw)
            elif f.type in (int, "int"):
                data[f.name] = int(raw)
            elif f.type in (float, "float"):
                data[f.name] = float(raw)
            else:
                data[f.name] = raw

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(data)

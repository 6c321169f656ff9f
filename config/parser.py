"""
Configuration parser for Lite QoS.
"""

import logging
import yaml
from pathlib import Path
from typing import Dict, Any, List

from pydantic import ValidationError

from models import InterfaceContext


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/qos-setup.yaml"
DEFAULT_LOG_FILE = "/var/log/qos-setup.log"

# Clients the floor must be guaranteed for when the configuration is accepted
ASSUMED_MAX_CLIENTS = 10
# Default class rates above this share of the total are flagged
RECOMMENDED_DEFAULT_PERCENT = 5


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class QosConfig:
    """Persisted QoS configuration parser and validator."""

    REQUIRED_FIELDS = {
        'interface': str,
        'match': str,
        'protocols': list,
        'ports': list,
        'bandwidth.total': int,
        'bandwidth.floor': int,
        'bandwidth.default': int,
    }

    def __init__(self, config_dict: Dict[str, Any]):
        self._config = config_dict
        self._validate()

    def _validate(self):
        """Validate that all required fields are present and have correct types."""
        for field_path, expected_type in self.REQUIRED_FIELDS.items():
            value = self._get_nested_value(field_path)
            if value is None:
                raise ConfigurationError(f"Missing required field: {field_path}")

            # bool is an int subclass; reject it for numeric fields
            if not isinstance(value, expected_type) or (
                expected_type is int and isinstance(value, bool)
            ):
                raise ConfigurationError(
                    f"Field {field_path} has incorrect type. "
                    f"Expected {expected_type}, got {type(value)}"
                )

        if self.match not in ('src', 'dst'):
            raise ConfigurationError(f"Field match must be 'src' or 'dst', got {self.match!r}")

        if not self.protocols:
            raise ConfigurationError("No protocol selected")
        for proto in self.protocols:
            if proto not in ('tcp', 'udp'):
                raise ConfigurationError(f"Unsupported protocol: {proto}")

        invalid_ports = [
            p for p in self.ports
            if isinstance(p, bool) or not isinstance(p, int) or not 1 <= p <= 65535
        ]
        if invalid_ports or not self.ports:
            raise ConfigurationError(f"Invalid ports: {invalid_ports or self.ports}")

        for name, value in (('total', self.total), ('floor', self.floor), ('default', self.default_rate)):
            if value <= 0:
                raise ConfigurationError(f"Field bandwidth.{name} must be > 0, got {value}")

        if self.default_rate >= self.total:
            raise ConfigurationError(
                f"Default rate ({self.default_rate} Mbit/s) must be lower than "
                f"total ({self.total} Mbit/s)"
            )

        if self.floor * ASSUMED_MAX_CLIENTS > self.total:
            raise ConfigurationError(
                f"Floor ({self.floor} Mbit/s) cannot be guaranteed for "
                f"{ASSUMED_MAX_CLIENTS} clients within {self.total} Mbit/s"
            )

        reserved = self.reserved_percent
        if isinstance(reserved, bool) or not isinstance(reserved, int) or not 0 <= reserved < 100:
            raise ConfigurationError(
                f"Field bandwidth.reserved_percent must be in 0-99, got {reserved!r}"
            )

        recommended = self.total * RECOMMENDED_DEFAULT_PERCENT // 100
        if self.default_rate > recommended:
            logger.warning(f"Default rate ({self.default_rate} Mbit/s) exceeds the "
                           f"recommended value ({recommended} Mbit/s)")

    def _get_nested_value(self, field_path: str) -> Any:
        """Get value from nested dictionary using dot notation."""
        keys = field_path.split('.')
        value = self._config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return None
        return value

    @property
    def interface(self) -> str:
        return self._config['interface']

    @property
    def match(self) -> str:
        return self._config['match']

    @property
    def protocols(self) -> List[str]:
        return [str(p).lower() for p in self._config['protocols']]

    @property
    def ipv6(self) -> bool:
        return bool(self._config.get('ipv6', False))

    @property
    def ports(self) -> List[int]:
        return self._config['ports']

    @property
    def total(self) -> int:
        return self._config['bandwidth']['total']

    @property
    def floor(self) -> int:
        return self._config['bandwidth']['floor']

    @property
    def default_rate(self) -> int:
        return self._config['bandwidth']['default']

    @property
    def reserved_percent(self) -> int:
        return self._config['bandwidth'].get('reserved_percent', 5)

    @property
    def allow_restricted_conntrack(self) -> bool:
        return bool((self._config.get('conntrack') or {}).get('allow_restricted', False))

    @property
    def log_file(self) -> str:
        return (self._config.get('logging') or {}).get('file', DEFAULT_LOG_FILE)

    @property
    def log_level(self) -> str:
        return str((self._config.get('logging') or {}).get('level', 'INFO')).upper()

    def to_context(self) -> InterfaceContext:
        """Build the immutable per-run interface context."""
        try:
            return InterfaceContext(
                interface=self.interface,
                match=self.match,
                protocols=tuple(self.protocols),
                ipv6=self.ipv6,
                ports=tuple(self.ports),
                total=self.total,
                reserved_percent=self.reserved_percent,
                floor=self.floor,
                default_rate=self.default_rate,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def from_file(cls, config_path: str = DEFAULT_CONFIG_PATH) -> 'QosConfig':
        """Load configuration from YAML file."""
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(path, 'r') as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML: {e}")

        if config_dict is None:
            raise ConfigurationError("Configuration file is empty")

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration file must contain a mapping")

        return cls(config_dict)

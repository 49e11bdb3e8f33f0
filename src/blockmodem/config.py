"""
Configuration for transfers and serial links.

Settings are plain dataclasses with protocol defaults; a YAML file can
override them:

    transfer:
      block_timeout: 5.0
      max_errors: 10
    serial:
      port: /dev/ttyUSB0
      baudrate: 115200
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union
from dataclasses import dataclass, field, fields, asdict
import logging

import yaml


@dataclass
class TransferConfig:
    """Timeouts and retry policy of the block-transfer engine"""
    # Handshake
    handshake_timeout: float = 60.0     # overall bound for the probe exchange
    probe_interval: float = 3.0         # delay between repeated probes
    crc_probe_window: float = 10.0      # CRC probing before falling back to checksum
    # Per block
    block_timeout: float = 10.0         # wait for a control byte, a frame or an ACK
    purge_timeout: float = 1.0          # line idle time that ends an input drain
    poll_interval: float = 0.25         # cancellation check granularity
    max_errors: int = 10
    cancel_burst: int = 2               # CAN bytes sent when aborting
    # Framing
    block_size: int = 1024
    pad_byte: int = 0x1A

    def validate(self) -> None:
        """
        Check value ranges

        Raises:
            ValueError: if any setting is out of range
        """
        for name in ('handshake_timeout', 'probe_interval', 'block_timeout', 'poll_interval'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ('crc_probe_window', 'purge_timeout'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.max_errors < 1:
            raise ValueError(f"max_errors must be at least 1, got {self.max_errors}")
        if self.cancel_burst < 1:
            raise ValueError(f"cancel_burst must be at least 1, got {self.cancel_burst}")
        if self.block_size not in (128, 1024):
            raise ValueError(f"block_size must be 128 or 1024, got {self.block_size}")
        if not 0 <= self.pad_byte <= 255:
            raise ValueError(f"pad_byte must be a byte value, got {self.pad_byte}")


@dataclass
class SerialConfig:
    """Serial port settings (port may be a device path or a pyserial URL)"""
    port: Optional[str] = None
    baudrate: int = 115200
    bytesize: int = 8
    parity: str = 'N'
    stopbits: float = 1
    rtscts: bool = False
    xonxoff: bool = False

    def validate(self) -> None:
        if self.baudrate <= 0:
            raise ValueError(f"baudrate must be positive, got {self.baudrate}")
        if self.bytesize not in (5, 6, 7, 8):
            raise ValueError(f"bytesize must be 5-8, got {self.bytesize}")
        if self.parity not in ('N', 'E', 'O', 'M', 'S'):
            raise ValueError(f"parity must be one of N, E, O, M, S, got {self.parity!r}")
        if self.stopbits not in (1, 1.5, 2):
            raise ValueError(f"stopbits must be 1, 1.5 or 2, got {self.stopbits}")


@dataclass
class AppConfig:
    """Complete configuration loaded from file"""
    transfer: TransferConfig = field(default_factory=TransferConfig)
    serial: SerialConfig = field(default_factory=SerialConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in section '{section}': {', '.join(sorted(unknown))}")

    instance = cls(**data)
    instance.validate()
    return instance


def config_from_dict(data: Optional[Dict[str, Any]]) -> AppConfig:
    """
    Build configuration from a parsed mapping

    Args:
        data: Mapping with optional 'transfer' and 'serial' sections

    Returns:
        Validated AppConfig
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping")

    unknown = set(data) - {'transfer', 'serial'}
    if unknown:
        raise ValueError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    return AppConfig(
        transfer=_build_section(TransferConfig, data.get('transfer'), 'transfer'),
        serial=_build_section(SerialConfig, data.get('serial'), 'serial'),
    )


def load_config(path: Union[str, Path, None]) -> AppConfig:
    """
    Load configuration from a YAML file

    Args:
        path: Configuration file path (missing file yields defaults)

    Returns:
        Validated AppConfig

    Raises:
        ValueError: if the file is not valid YAML or contains invalid settings
    """
    if path is None or not Path(path).exists():
        logging.debug(f"Configuration file not found: {path}, using defaults")
        return AppConfig()

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}")

    logging.debug(f"Loaded configuration from {path}")
    return config_from_dict(data)

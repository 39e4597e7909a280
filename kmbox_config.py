"""Client settings and factory.

Settings live in an INI file::

    [kmbox]
    host = 192.168.2.188
    port = 8888
    mac = 417F0CD3
    timeout = 2.0

``timeout`` is optional; leave it out (or empty) to wait for replies forever.
"""
from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from typing import Optional

import kmbox_protocol as kp
from kmbox_client import KmBoxClient


logger = logging.getLogger(__name__)

DEFAULT_SECTION = "kmbox"


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    mac: str
    timeout: Optional[float] = None


def load_settings(path: str, section: str = DEFAULT_SECTION) -> Settings:
    """Read client settings from ``section`` of an INI file."""
    if not os.path.isfile(path):
        raise ValueError(f"Settings file not found: {path}")

    config = configparser.ConfigParser()
    config.read(path)
    if section not in config:
        raise ValueError(f"Missing [{section}] section in {path}")
    values = config[section]

    missing = [key for key in ("host", "port", "mac") if not values.get(key, "").strip()]
    if missing:
        raise ValueError(f"Missing {', '.join(missing)} in [{section}] of {path}")

    host = values["host"].strip()
    kp.parse_ipv4(host)

    try:
        port = int(values["port"], 0)
    except ValueError:
        raise ValueError(f"Invalid port in {path}: {values['port']!r}") from None
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"Port out of range in {path}: {port}")

    mac = values["mac"].strip()
    kp.mac_to_uint(mac)

    timeout_str = values.get("timeout", "").strip()
    try:
        timeout = float(timeout_str) if timeout_str else None
    except ValueError:
        raise ValueError(f"Invalid timeout in {path}: {timeout_str!r}") from None

    settings = Settings(host=host, port=port, mac=mac, timeout=timeout)
    logger.info("Loaded KMBox settings from %s: %s:%d", path, host, port)
    return settings


def create_client(settings: Settings) -> KmBoxClient:
    return KmBoxClient(settings.host, settings.port, settings.mac, timeout=settings.timeout)

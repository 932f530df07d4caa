# dns_autoswitch/config.py
"""Configuration file handling with helpful error messages"""

import configparser
import ipaddress
import os
import re
import sys
from typing import Any, Dict, List, Optional

from .constants import DEFAULT_CONFIG_PATH, PROBE_QUERY_NAME
from .errors import ConfigError, StrategyValidationError
from .health.transports import TRANSPORTS
from .models import DEFAULT_CANDIDATES, DnsCandidate, expand_secondary_candidates
from .settings import SwitchStrategy

SERVER_SECTION_PREFIX = "server:"


class SwitcherConfig:
    """Configuration manager for dns-autoswitch"""

    DEFAULT_CONFIG = {
        "dns-autoswitch": {
            "active": "",
            "probe-secondary": "false",
            "pid-file": "/var/run/dns-autoswitch.pid",
        },
        "strategy": {
            "preset": "balanced",
            "auto-switch": "true",
            "check-interval": "5",
            "min-improvement": "20",
            "consecutive-checks": "4",
            "stability-period": "2",
            "hysteresis": "true",
            "hysteresis-margin": "10",
            "switch-on-failure": "true",
            "battery-saver": "false",
        },
        "probe": {
            "transport": "tcp",
            "timeout": "3.0",
            "max-retries": "2",
            "max-concurrency": "8",
            "query-name": PROBE_QUERY_NAME,
        },
        "tunnel": {
            "command": "",
        },
        "persistence": {
            "path": "",
        },
        "log-file": {
            "log-file": "/var/log/dns-autoswitch.log",
            "debug-level": "INFO",
            "syslog": "false",
        },
    }

    # [strategy] option -> SwitchStrategy field
    STRATEGY_OPTIONS = {
        "preset": "strategy",
        "auto-switch": "auto_switch_enabled",
        "check-interval": "check_interval_sec",
        "min-improvement": "min_improvement_ms",
        "consecutive-checks": "consecutive_checks_required",
        "stability-period": "stability_period_min",
        "hysteresis": "hysteresis_enabled",
        "hysteresis-margin": "hysteresis_margin_ms",
        "switch-on-failure": "switch_on_failure",
        "battery-saver": "battery_saver_mode",
    }
    BOOLEAN_STRATEGY_OPTIONS = {"auto-switch", "hysteresis", "switch-on-failure", "battery-saver"}

    # Common typos in [server:<id>] sections and their corrections
    FIELD_CORRECTIONS = {
        "adress": "address",
        "addres": "address",
        "addr": "address",
        "ip": "address",
        "host": "address",
        "secundary": "secondary",
        "secondery": "secondary",
        "backup": "secondary",
        "display-name": "name",
        "label": "name",
        "tls-name": "tls-hostname",
        "tls_hostname": "tls-hostname",
        "hostname": "tls-hostname",
        "enable": "enabled",
    }

    VALID_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self.config = configparser.ConfigParser()
        self._load_defaults()
        self._load_config()

    def _load_defaults(self):
        """Load default configuration"""
        for section, options in self.DEFAULT_CONFIG.items():
            self.config.add_section(section)
            for key, value in options.items():
                self.config.set(section, key, value)

    def _load_config(self):
        """Load configuration from file"""
        if os.path.exists(self.config_path):
            try:
                self.config.read(self.config_path)
            except configparser.Error as e:
                raise ConfigError(
                    f"Error reading config file {self.config_path}: {e}",
                    "Check the file for duplicate sections or lines without 'key = value'",
                )
        else:
            print(f"Warning: Config file {self.config_path} not found, using defaults", file=sys.stderr)

    @classmethod
    def from_string(cls, text: str) -> "SwitcherConfig":
        """Build a configuration from INI text instead of a file"""
        instance = cls.__new__(cls)
        instance.config_path = "<string>"
        instance.config = configparser.ConfigParser()
        instance._load_defaults()
        try:
            instance.config.read_string(text)
        except configparser.Error as e:
            raise ConfigError(f"Error parsing configuration: {e}")
        return instance

    def get(self, section: str, option: str, fallback: Any = None) -> str:
        """Get configuration value"""
        try:
            return self.config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        """Get integer configuration value"""
        try:
            return self.config.getint(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getfloat(self, section: str, option: str, fallback: float = 0.0) -> float:
        """Get float configuration value"""
        try:
            return self.config.getfloat(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        """Get boolean configuration value"""
        try:
            return self.config.getboolean(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def _require_boolean(self, section: str, option: str) -> bool:
        try:
            return self.config.getboolean(section, option)
        except ValueError:
            raise ConfigError(
                f"In [{section}]: {option} must be true or false",
                f"Got '{self.config.get(section, option)}'",
            )

    def _require_number(self, section: str, option: str, kind, low, high):
        raw = self.config.get(section, option)
        try:
            value = kind(raw)
            if not low <= value <= high:
                raise ValueError()
        except ValueError:
            raise ConfigError(
                f"In [{section}]: {option} must be a number between {low} and {high}",
                f"Got '{raw}'",
            )
        return value

    # Strategy

    def get_strategy(self) -> SwitchStrategy:
        """
        Build the switching strategy from [strategy]

        Out-of-range values are rejected, never clamped.
        """
        data: Dict[str, Any] = {}
        for option, field_name in self.STRATEGY_OPTIONS.items():
            if not self.config.has_option("strategy", option):
                continue
            if option == "preset":
                data[field_name] = self.config.get("strategy", option).strip()
            elif option in self.BOOLEAN_STRATEGY_OPTIONS:
                data[field_name] = self._require_boolean("strategy", option)
            else:
                raw = self.config.get("strategy", option)
                try:
                    data[field_name] = int(raw)
                except ValueError:
                    raise ConfigError(
                        f"In [strategy]: {option} must be a whole number", f"Got '{raw}'"
                    )

        unknown = sorted(set(self.config.options("strategy")) - set(self.STRATEGY_OPTIONS))
        if unknown:
            raise ConfigError(
                f"In [strategy]: unknown option(s) {', '.join(unknown)}",
                f"Valid options are: {', '.join(self.STRATEGY_OPTIONS)}",
            )

        try:
            return SwitchStrategy.from_dict(data)
        except StrategyValidationError as e:
            raise ConfigError(
                f"In [strategy]: {'; '.join(e.issues)}",
                "Adjust the values to their valid ranges or use a preset",
            )

    # Servers

    def get_candidates(self) -> List[DnsCandidate]:
        """Candidates from [server:<id>] sections, or the built-in catalog"""
        sections = [s for s in self.config.sections() if s.startswith(SERVER_SECTION_PREFIX)]
        if sections:
            candidates = [self._parse_server_section(section) for section in sections]
        else:
            candidates = list(DEFAULT_CANDIDATES)

        seen: Dict[str, str] = {}
        for candidate in candidates:
            if candidate.primary_address in seen:
                print(
                    f"Warning: [server:{candidate.id}] has same address as "
                    f"[server:{seen[candidate.primary_address]}]",
                    file=sys.stderr,
                )
            seen[candidate.primary_address] = candidate.id

        if self.getboolean("dns-autoswitch", "probe-secondary", False):
            candidates = expand_secondary_candidates(candidates)
        return candidates

    def _parse_server_section(self, section: str) -> DnsCandidate:
        """Parse a single [server:<id>] section with validation"""
        server_id = section[len(SERVER_SECTION_PREFIX):]
        if not self.VALID_ID_PATTERN.match(server_id):
            raise ConfigError(
                f"Section [{section}] has invalid characters in name",
                "Use only letters, numbers, hyphens, and underscores",
            )

        options = dict(self.config.items(section))

        for typo, correct in self.FIELD_CORRECTIONS.items():
            if typo in options and correct not in options:
                raise ConfigError(
                    f"In [{section}]: Found '{typo}', did you mean '{correct}'?",
                    f"Change '{typo}' to '{correct}'",
                )

        if "address" not in options:
            raise ConfigError(
                f"Section [{section}] is missing required 'address' field",
                "Add 'address = <IP address>' to this section",
            )

        address = self._parse_address(section, options["address"])
        secondary = None
        if options.get("secondary", "").strip():
            secondary = self._parse_address(section, options["secondary"])

        enabled = True
        if "enabled" in options:
            enabled = self._require_boolean(section, "enabled")

        return DnsCandidate(
            id=server_id,
            display_name=options.get("name", "").strip() or server_id,
            primary_address=address,
            secondary_address=secondary,
            enabled=enabled,
            tls_hostname=options.get("tls-hostname", "").strip() or None,
        )

    def _parse_address(self, section: str, raw: str) -> str:
        # Remove any inline comments
        address = raw.split("#")[0].strip()
        if address.startswith("[") and address.endswith("]"):
            address = address[1:-1]
        try:
            ipaddress.ip_address(address)
        except ValueError:
            raise ConfigError(
                f"In [{section}]: '{address}' is not a valid IP address",
                "Use IPv4 (like 1.1.1.1) or IPv6 (like 2606:4700:4700::1111)",
            )
        return address

    def get_active_server_id(self, candidates: List[DnsCandidate]) -> Optional[str]:
        """The configured initial server, validated against the candidates"""
        active = self.get("dns-autoswitch", "active", "").strip()
        if not active:
            return None
        ids = [c.id for c in candidates]
        if active not in ids:
            raise ConfigError(
                f"In [dns-autoswitch]: active server '{active}' is not configured",
                f"Choose one of: {', '.join(ids)}",
            )
        return active

    # Probe, tunnel, persistence

    def get_probe_settings(self) -> Dict[str, Any]:
        transport = self.get("probe", "transport", "tcp").strip().lower()
        if transport not in TRANSPORTS:
            raise ConfigError(
                f"In [probe]: unknown transport '{transport}'",
                f"Use one of: {', '.join(TRANSPORTS)}",
            )
        return {
            "transport": transport,
            "timeout": self._require_number("probe", "timeout", float, 0.1, 30.0),
            "max_retries": self._require_number("probe", "max-retries", int, 0, 10),
            "max_concurrency": self._require_number("probe", "max-concurrency", int, 1, 64),
            "query_name": self.get("probe", "query-name", PROBE_QUERY_NAME).strip(),
        }

    def get_tunnel_command(self) -> Optional[str]:
        command = self.get("tunnel", "command", "").strip()
        return command or None

    def get_persistence_path(self) -> Optional[str]:
        path = self.get("persistence", "path", "").strip()
        return path or None

    def validate_config(self) -> List[str]:
        """Validate configuration and return a list of problems"""
        issues = []
        try:
            self.get_strategy()
            candidates = self.get_candidates()
            self.get_active_server_id(candidates)
            self.get_probe_settings()
            if not any(c.enabled for c in candidates):
                issues.append("Warning: All DNS servers are disabled")
        except ConfigError as e:
            issues.append(f"Error: {e.message}")
        return issues

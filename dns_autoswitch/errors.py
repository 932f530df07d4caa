# dns_autoswitch/errors.py
"""Exceptions raised by dns-autoswitch"""

from typing import List, Optional


class SwitcherError(Exception):
    """Base class for all dns-autoswitch errors"""


class ConfigError(SwitcherError):
    """Configuration error with helpful message"""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class StrategyValidationError(SwitcherError):
    """Imported strategy settings are outside their valid ranges"""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        super().__init__(f"Invalid settings: {', '.join(self.issues)}")


class UnknownServerError(SwitcherError):
    """A server id that is not in the candidate catalog"""

    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"Unknown DNS server: {server_id}")

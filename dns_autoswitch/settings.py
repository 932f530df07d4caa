# dns_autoswitch/settings.py
"""Switching strategy presets, effective values and the settings store"""

import json
import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from .constants import (
    BATTERY_SAVER_INTERVAL_FACTOR,
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_CONSECUTIVE_CHECKS,
    DEFAULT_HYSTERESIS_MARGIN,
    DEFAULT_MIN_IMPROVEMENT,
    DEFAULT_STABILITY_PERIOD,
    MAX_CHECK_INTERVAL,
    MAX_CONSECUTIVE_CHECKS,
    MAX_HYSTERESIS_MARGIN,
    MAX_IMPROVEMENT,
    MAX_STABILITY_PERIOD,
    MIN_CHECK_INTERVAL,
    MIN_CONSECUTIVE_CHECKS,
    MIN_HYSTERESIS_MARGIN,
    MIN_IMPROVEMENT,
    MIN_STABILITY_PERIOD,
)
from .errors import StrategyValidationError
from .interfaces import SettingsStore

logger = logging.getLogger(__name__)


class Strategy(Enum):
    """Available switching strategies"""

    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    CUSTOM = "custom"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def description(self) -> str:
        return {
            Strategy.CONSERVATIVE: "Prioritizes stability over speed. Fewer switches, more reliable.",
            Strategy.BALANCED: "Balanced approach between speed and stability. Good for most users.",
            Strategy.AGGRESSIVE: "Prioritizes speed over stability. Switches more often.",
            Strategy.CUSTOM: "Custom configuration tailored to your preferences.",
        }[self]


@dataclass(frozen=True)
class PresetValues:
    check_interval_sec: int
    min_improvement_ms: int
    consecutive_checks_required: int
    stability_period_min: int


PRESETS: Dict[Strategy, PresetValues] = {
    Strategy.CONSERVATIVE: PresetValues(10, 30, 5, 3),
    Strategy.BALANCED: PresetValues(5, 20, 4, 2),
    Strategy.AGGRESSIVE: PresetValues(5, 15, 2, 1),
}

# (field, minimum, maximum, unit) for every range-checked field
_RANGES = (
    ("check_interval_sec", MIN_CHECK_INTERVAL, MAX_CHECK_INTERVAL, "seconds"),
    ("min_improvement_ms", MIN_IMPROVEMENT, MAX_IMPROVEMENT, "ms"),
    ("consecutive_checks_required", MIN_CONSECUTIVE_CHECKS, MAX_CONSECUTIVE_CHECKS, "checks"),
    ("stability_period_min", MIN_STABILITY_PERIOD, MAX_STABILITY_PERIOD, "minutes"),
    ("hysteresis_margin_ms", MIN_HYSTERESIS_MARGIN, MAX_HYSTERESIS_MARGIN, "ms"),
)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


@dataclass(frozen=True)
class SwitchStrategy:
    """
    DNS switching configuration

    The numeric fields are the Custom variant's values; presets override the
    interval, improvement, consecutive-check and stability values. Hysteresis,
    failure switching and battery saver apply to every preset.
    """

    strategy: Strategy = Strategy.BALANCED
    auto_switch_enabled: bool = True
    check_interval_sec: int = DEFAULT_CHECK_INTERVAL
    min_improvement_ms: int = DEFAULT_MIN_IMPROVEMENT
    consecutive_checks_required: int = DEFAULT_CONSECUTIVE_CHECKS
    stability_period_min: int = DEFAULT_STABILITY_PERIOD
    hysteresis_enabled: bool = True
    hysteresis_margin_ms: int = DEFAULT_HYSTERESIS_MARGIN
    switch_on_failure: bool = True
    battery_saver_mode: bool = False

    @classmethod
    def preset(cls, strategy: Strategy, **overrides) -> "SwitchStrategy":
        return cls(strategy=strategy, **overrides)

    def _base(self) -> PresetValues:
        if self.strategy is Strategy.CUSTOM:
            return PresetValues(
                self.check_interval_sec,
                self.min_improvement_ms,
                self.consecutive_checks_required,
                self.stability_period_min,
            )
        return PRESETS[self.strategy]

    @property
    def effective_check_interval(self) -> int:
        """Seconds between ticks; battery saver stretches it, capped at 60s"""
        base = self._base().check_interval_sec
        if self.battery_saver_mode:
            return min(int(base * BATTERY_SAVER_INTERVAL_FACTOR), MAX_CHECK_INTERVAL)
        return base

    @property
    def effective_min_improvement(self) -> int:
        return self._base().min_improvement_ms

    @property
    def effective_consecutive_checks(self) -> int:
        return self._base().consecutive_checks_required

    @property
    def effective_stability_period(self) -> int:
        """Stability period in minutes"""
        return self._base().stability_period_min

    @property
    def stability_period_seconds(self) -> float:
        return self.effective_stability_period * 60.0

    @property
    def improvement_threshold(self) -> int:
        """Improvement a candidate must reach, including the hysteresis margin"""
        if self.hysteresis_enabled:
            return self.effective_min_improvement + self.hysteresis_margin_ms
        return self.effective_min_improvement

    def validate(self) -> List[str]:
        """Return a list of range violations (empty when valid)"""
        issues = []
        for field_name, low, high, unit in _RANGES:
            value = getattr(self, field_name)
            if not low <= value <= high:
                label = field_name.replace("_", " ")
                issues.append(f"{label} must be between {low}-{high} {unit} (got {value})")
        return issues

    def clamped(self) -> "SwitchStrategy":
        """Copy with every numeric field forced into its valid range"""
        changes = {
            field_name: _clamp(getattr(self, field_name), low, high)
            for field_name, low, high, _ in _RANGES
        }
        return replace(self, **changes)

    # Individual setters clamp instead of rejecting

    def with_strategy(self, strategy: Strategy) -> "SwitchStrategy":
        return replace(self, strategy=strategy)

    def with_check_interval(self, seconds: int) -> "SwitchStrategy":
        return replace(
            self, check_interval_sec=_clamp(seconds, MIN_CHECK_INTERVAL, MAX_CHECK_INTERVAL)
        )

    def with_min_improvement(self, ms: int) -> "SwitchStrategy":
        return replace(self, min_improvement_ms=_clamp(ms, MIN_IMPROVEMENT, MAX_IMPROVEMENT))

    def with_consecutive_checks(self, checks: int) -> "SwitchStrategy":
        return replace(
            self,
            consecutive_checks_required=_clamp(
                checks, MIN_CONSECUTIVE_CHECKS, MAX_CONSECUTIVE_CHECKS
            ),
        )

    def with_stability_period(self, minutes: int) -> "SwitchStrategy":
        return replace(
            self,
            stability_period_min=_clamp(minutes, MIN_STABILITY_PERIOD, MAX_STABILITY_PERIOD),
        )

    def with_hysteresis_margin(self, ms: int) -> "SwitchStrategy":
        return replace(
            self,
            hysteresis_margin_ms=_clamp(ms, MIN_HYSTERESIS_MARGIN, MAX_HYSTERESIS_MARGIN),
        )

    def with_flags(self, **flags) -> "SwitchStrategy":
        """Set boolean options (hysteresis_enabled, battery_saver_mode, ...)"""
        allowed = {
            "auto_switch_enabled",
            "hysteresis_enabled",
            "switch_on_failure",
            "battery_saver_mode",
        }
        unknown = set(flags) - allowed
        if unknown:
            raise TypeError(f"Not a boolean option: {', '.join(sorted(unknown))}")
        return replace(self, **{name: bool(value) for name, value in flags.items()})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SwitchStrategy":
        """
        Build a strategy from an external representation

        Raises:
            StrategyValidationError: on unknown keys, wrong types or values
                outside their valid range. Nothing is silently clamped here.
        """
        if not isinstance(data, dict):
            raise StrategyValidationError(["settings must be a JSON object"])

        issues = []
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            issues.append(f"unknown settings: {', '.join(unknown)}")

        values = {}
        for name, value in data.items():
            if name not in known:
                continue
            if name == "strategy":
                try:
                    values[name] = Strategy(str(value).lower())
                except ValueError:
                    issues.append(f"unknown strategy '{value}'")
            elif isinstance(cls.__dataclass_fields__[name].default, bool):
                if not isinstance(value, bool):
                    issues.append(f"{name} must be true or false")
                else:
                    values[name] = value
            elif isinstance(value, bool) or not isinstance(value, int):
                issues.append(f"{name} must be a whole number")
            else:
                values[name] = value

        if issues:
            raise StrategyValidationError(issues)

        strategy = cls(**values)
        issues = strategy.validate()
        if issues:
            raise StrategyValidationError(issues)
        return strategy


def export_settings(strategy: SwitchStrategy) -> str:
    """Serialize a strategy to JSON"""
    return json.dumps(strategy.to_dict(), indent=2, sort_keys=True)


def import_settings(text: str) -> SwitchStrategy:
    """Parse and validate JSON produced by export_settings()"""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise StrategyValidationError([f"malformed JSON: {e}"])
    return SwitchStrategy.from_dict(data)


SettingsObserver = Callable[[SwitchStrategy, Dict[str, bool]], None]


class InMemorySettingsStore(SettingsStore):
    """
    Settings store kept in memory

    Every change is pushed to the registered observers, which is how the
    monitor loop sees settings updates.
    """

    def __init__(
        self,
        strategy: Optional[SwitchStrategy] = None,
        enabled: Optional[Dict[str, bool]] = None,
    ):
        self._strategy = (strategy or SwitchStrategy()).clamped()
        self._enabled: Dict[str, bool] = dict(enabled or {})
        self._observers: List[SettingsObserver] = []

    def get_strategy(self) -> SwitchStrategy:
        return self._strategy

    def is_enabled(self, server_id: str, default: bool = True) -> bool:
        return self._enabled.get(server_id, default)

    def enabled_flags(self) -> Dict[str, bool]:
        return dict(self._enabled)

    def add_observer(self, observer: SettingsObserver):
        self._observers.append(observer)

    def remove_observer(self, observer: SettingsObserver):
        if observer in self._observers:
            self._observers.remove(observer)

    def update_strategy(self, strategy: SwitchStrategy):
        """Replace the whole strategy; numeric fields are clamped"""
        self._strategy = strategy.clamped()
        logger.info(
            f"Strategy set to {self._strategy.strategy.display_name} "
            f"(interval {self._strategy.effective_check_interval}s)"
        )
        self._notify()

    def set_candidate_enabled(self, server_id: str, enabled: bool):
        self._enabled[server_id] = bool(enabled)
        logger.info(f"{server_id} {'enabled' if enabled else 'disabled'}")
        self._notify()

    def import_settings(self, text: str) -> SwitchStrategy:
        """Import JSON settings; invalid settings are rejected and nothing changes"""
        strategy = import_settings(text)
        self.update_strategy(strategy)
        return strategy

    def export_settings(self) -> str:
        return export_settings(self._strategy)

    def reset_to_defaults(self):
        self.update_strategy(SwitchStrategy())

    def _notify(self):
        strategy, enabled = self._strategy, dict(self._enabled)
        for observer in list(self._observers):
            observer(strategy, enabled)

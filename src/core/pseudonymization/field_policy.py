"""
Payload field allowlist for pseudonymization.

A field leaves the transformer only when its dotted path is named in the
policy. Unknown fields are dropped, so schema additions fail closed.
"""

import re
from datetime import date
from pathlib import Path
from typing import Any, Callable

import yaml

UNKNOWN = "unknown"

# Leaf values a rule may see. Lists and other containers are never copied.
SCALAR_TYPES = (str, int, float, bool, type(None), date)

_VERSION_MAJOR = re.compile(r"^\s*v?(\d+)")

_TABLET_MARKERS = ("ipad", "tablet", "tab ", "galaxy tab", "kindle", "surface")
_PHONE_MARKERS = ("iphone", "pixel", "galaxy", "phone", "android", "xperia", "oneplus", "redmi", "aquos")
_DESKTOP_MARKERS = ("mac", "windows", "linux", "desktop", "pc", "chromebook")


def generalize_decade(value: Any) -> str:
    """Birth year or any year-like value → "1980s"."""
    try:
        year = int(value)
    except (TypeError, ValueError):
        return UNKNOWN
    if year <= 0:
        return UNKNOWN
    return f"{year // 10 * 10}s"


def generalize_major_version(value: Any) -> str:
    """"17.2.1" → "17"."""
    if value is None:
        return UNKNOWN
    match = _VERSION_MAJOR.match(str(value))
    return match.group(1) if match else UNKNOWN


def generalize_device_class(value: Any) -> str:
    """Free-text device model → phone, tablet, desktop or other."""
    if not value:
        return UNKNOWN
    model = f"{str(value).lower()} "
    if any(marker in model for marker in _TABLET_MARKERS):
        return "tablet"
    if any(marker in model for marker in _PHONE_MARKERS):
        return "phone"
    if any(marker in model for marker in _DESKTOP_MARKERS):
        return "desktop"
    return "other"


def _keep(value: Any) -> Any:
    return value


GENERALIZERS: dict[str, Callable[[Any], Any]] = {
    "keep": _keep,
    "decade": generalize_decade,
    "major_version": generalize_major_version,
    "device_class": generalize_device_class,
}

DEFAULT_FIELD_RULES: dict[str, str] = {
    "category": "keep",
    "exercise_type": "keep",
    "rep_count": "keep",
    "set_count": "keep",
    "total_score": "keep",
    "average_score": "keep",
    "max_score": "keep",
    "min_score": "keep",
    "duration_seconds": "keep",
    "started_at": "keep",
    "ended_at": "keep",
    "birth_year": "decade",
    "gender": "keep",
    "fitness_level": "keep",
    "region": "keep",
    "metadata.average_fps": "keep",
    "metadata.app_version": "keep",
    "metadata.device.platform": "keep",
    "metadata.device.os_version": "major_version",
    "metadata.device.model": "device_class",
}


class FieldPolicy:
    """
    Static allowlist mapping dotted payload paths to generalization rules.
    """

    def __init__(self, rules: dict[str, str] | None = None):
        """
        Initialize the policy.

        Args:
            rules: Mapping of dotted path to rule name (defaults to
                DEFAULT_FIELD_RULES)

        Raises:
            ValueError: If a rule name is unknown
        """
        rules = DEFAULT_FIELD_RULES if rules is None else rules
        for path, rule in rules.items():
            if rule not in GENERALIZERS:
                raise ValueError(
                    f"Unknown rule '{rule}' for field '{path}'. "
                    f"Supported: {', '.join(sorted(GENERALIZERS))}"
                )
        self.rules = dict(rules)

    def apply(self, payload: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """
        Filter and generalize a payload.

        Args:
            payload: Raw business payload

        Returns:
            Tuple of (allowed payload, dotted paths that were dropped)
        """
        dropped: list[str] = []
        allowed = self._apply(payload, "", dropped)
        return allowed, dropped

    def _apply(self, payload: dict[str, Any], prefix: str, dropped: list[str]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in payload.items():
            path = f"{prefix}{key}"
            if isinstance(value, dict):
                if path in self.rules:
                    # Whole sub-documents are never allowlisted by name
                    dropped.append(path)
                    continue
                nested = self._apply(value, f"{path}.", dropped)
                if nested:
                    result[key] = nested
                continue

            rule = self.rules.get(path)
            if rule is None or not isinstance(value, SCALAR_TYPES):
                dropped.append(path)
                continue
            result[key] = GENERALIZERS[rule](value)
        return result


class FieldPolicyLoader:
    """
    Loads a field policy from a YAML file.

    Expected YAML format:
    ```yaml
    fields:
      category: keep
      rep_count: keep
      birth_year: decade
      metadata.device.model: device_class
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the loader.

        Args:
            config_path: Path to the YAML policy file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Field policy file not found: {config_path}")

    def load(self) -> FieldPolicy:
        """
        Parse the policy file.

        Returns:
            FieldPolicy built from the file

        Raises:
            ValueError: If the file has no 'fields' mapping
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or not isinstance(config.get("fields"), dict):
            raise ValueError("Field policy file must contain a 'fields' mapping")

        return FieldPolicy({str(path): str(rule) for path, rule in config["fields"].items()})

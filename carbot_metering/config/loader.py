"""
Configuration management and loading.

Reads the metering engine settings from YAML. Every section is optional;
anything present is validated strictly so a typo never silently falls back
to a default.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Tuple

import yaml

from carbot_metering.core.limits import FailurePolicy
from carbot_metering.core.pricing import DEFAULT_BASE_URL
from carbot_metering.core.thresholds import DEFAULT_THRESHOLDS, validate_thresholds
from carbot_metering.core.tiers import (
    TIER_CATALOG,
    UNLIMITED,
    RatePolicy,
    TierCatalog,
    TierId,
    UnknownTierError,
)
from carbot_metering.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class EngineConfig:
    """Complete metering engine configuration."""
    db_path: str = DEFAULT_DB_PATH
    on_storage_error: FailurePolicy = FailurePolicy.CLOSED
    warning_thresholds: Tuple[int, ...] = DEFAULT_THRESHOLDS
    rate_policies: Dict[TierId, RatePolicy] = field(default_factory=dict)
    upgrade_base_url: str = DEFAULT_BASE_URL

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()

    def catalog(self) -> TierCatalog:
        """Tier catalog with any configured rate policy overrides applied."""
        return TIER_CATALOG.with_rate_policies(self.rate_policies)


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'limits', 'warnings', 'rate_limits', 'upgrade'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = EngineConfig.default()

    database = _section(raw_config, 'database', {'path'})
    db_path = database.get('path', defaults.db_path)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")

    limits = _section(raw_config, 'limits', {'on_storage_error'})
    on_storage_error = defaults.on_storage_error
    if 'on_storage_error' in limits:
        policy = limits['on_storage_error']
        try:
            on_storage_error = FailurePolicy(str(policy).lower())
        except ValueError:
            valid = [p.value for p in FailurePolicy]
            raise ValueError(f"'limits.on_storage_error' must be one of: {valid}")

    warnings = _section(raw_config, 'warnings', {'thresholds'})
    thresholds = defaults.warning_thresholds
    if 'thresholds' in warnings:
        if not isinstance(warnings['thresholds'], list):
            raise ValueError("'warnings.thresholds' must be a list")
        thresholds = validate_thresholds(warnings['thresholds'])

    rate_limits = _section(raw_config, 'rate_limits', {t.value for t in TierId})
    rate_policies = {}
    for tier_name, overrides in rate_limits.items():
        tier_id = TierId.parse(tier_name)
        rate_policies[tier_id] = _parse_rate_policy(overrides, tier_id, f"rate_limits.{tier_name}")

    upgrade = _section(raw_config, 'upgrade', {'base_url'})
    base_url = upgrade.get('base_url', defaults.upgrade_base_url)
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        raise ValueError("'upgrade.base_url' must be an http(s) URL")

    return EngineConfig(
        db_path=db_path,
        on_storage_error=on_storage_error,
        warning_thresholds=thresholds,
        rate_policies=rate_policies,
        upgrade_base_url=base_url
    )


def _section(raw_config: Dict, name: str, allowed_keys) -> Dict:
    """Return an optional top-level section, validated as a dict of known keys."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - set(allowed_keys)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_rate_policy(data, tier_id: TierId, path: str) -> RatePolicy:
    """Merge per-tier overrides onto the tier's compiled-in rate policy.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'api_calls_per_minute', 'leads_per_hour', 'concurrent_requests'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")
        if key != 'concurrent_requests' and value < 0 and value != UNLIMITED:
            raise ValueError(f"'{key}' in {path} must be >= 0 or {UNLIMITED}")

    try:
        base = TIER_CATALOG.get(tier_id).rate_policy
    except UnknownTierError as e:
        raise ValueError(str(e))
    merged = asdict(base)
    merged.update(data)
    return RatePolicy(**merged)

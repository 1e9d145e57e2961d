"""
Configuration management and loading.

Reads marketplace settings from YAML with strict validation.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from inference_market.core.ads import DEFAULT_AD_INVENTORY, DEFAULT_CATEGORIES
from inference_market.core.matcher import DEFAULT_PRICE_UNIT_TOKENS
from inference_market.core.pricing import DEFAULT_QUALITY_TABLE, QualityLevel, QualityTable

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class MatchingConfig:
    """Provider scoring and admission settings."""
    price_unit_tokens: int = DEFAULT_PRICE_UNIT_TOKENS
    max_admission_attempts: int = 3

    def __post_init__(self):
        """Validate matching values are positive."""
        if self.price_unit_tokens <= 0:
            raise ValueError("price_unit_tokens must be > 0")
        if self.max_admission_attempts < 1:
            raise ValueError("max_admission_attempts must be >= 1")


@dataclass(frozen=True)
class AdConfig:
    """Ad selection settings and seed inventory."""
    cooldown_ms: int = 300_000
    relevance_floor: float = 5.0
    default_categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    inventory: Tuple[Dict[str, Any], ...] = DEFAULT_AD_INVENTORY

    def __post_init__(self):
        """Validate ad settings."""
        if self.cooldown_ms < 0:
            raise ValueError("cooldown_ms cannot be negative")
        if self.relevance_floor < 0:
            raise ValueError("relevance_floor cannot be negative")


@dataclass(frozen=True)
class RevenueConfig:
    """Share of provider earnings booked as platform inference revenue."""
    inference_share: Decimal = Decimal("0.1")

    def __post_init__(self):
        """Validate share is a fraction."""
        if not 0 <= self.inference_share <= 1:
            raise ValueError("inference_share must be within [0, 1]")


@dataclass(frozen=True)
class MarketplaceConfig:
    """Complete marketplace configuration."""
    quality: QualityTable = DEFAULT_QUALITY_TABLE
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    ads: AdConfig = field(default_factory=AdConfig)
    revenue: RevenueConfig = field(default_factory=RevenueConfig)
    db_path: Optional[str] = None
    log_level: str = "INFO"


DEFAULT_CONFIG = MarketplaceConfig()

_AD_KEYS = {'id', 'category', 'content', 'keywords', 'cpm', 'ctr'}


def load_marketplace_config(path: str) -> MarketplaceConfig:
    """Load and validate marketplace configuration from a YAML file.

    Every section is optional; missing sections take their defaults. Unknown
    keys are rejected so that a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MarketplaceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Marketplace config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'quality_tiers', 'matching', 'ads', 'revenue', 'storage', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    quality = DEFAULT_QUALITY_TABLE
    if 'quality_tiers' in raw_config:
        quality = _parse_quality_tiers(raw_config['quality_tiers'])

    matching_data = _section(raw_config, 'matching', {'price_unit_tokens', 'max_admission_attempts'})
    matching = MatchingConfig(
        price_unit_tokens=_int(matching_data, 'price_unit_tokens', DEFAULT_PRICE_UNIT_TOKENS, 'matching'),
        max_admission_attempts=_int(matching_data, 'max_admission_attempts', 3, 'matching'),
    )

    ads_data = _section(
        raw_config, 'ads', {'cooldown_ms', 'relevance_floor', 'default_categories', 'inventory'}
    )
    ads = AdConfig(
        cooldown_ms=_int(ads_data, 'cooldown_ms', 300_000, 'ads'),
        relevance_floor=_number(ads_data, 'relevance_floor', 5.0, 'ads'),
        default_categories=tuple(
            _string_list(ads_data, 'default_categories', list(DEFAULT_CATEGORIES), 'ads')
        ),
        inventory=_parse_inventory(ads_data['inventory']) if 'inventory' in ads_data
        else DEFAULT_AD_INVENTORY,
    )

    revenue_data = _section(raw_config, 'revenue', {'inference_share'})
    revenue = RevenueConfig(
        inference_share=Decimal(str(_number(revenue_data, 'inference_share', 0.1, 'revenue')))
    )

    storage_data = _section(raw_config, 'storage', {'db_path'})
    db_path = storage_data.get('db_path')
    if db_path is not None and not isinstance(db_path, str):
        raise ValueError("'db_path' in storage must be a string")

    logging_data = _section(raw_config, 'logging', {'level'})
    log_level = logging_data.get('level', 'INFO')
    if not isinstance(log_level, str) or log_level.upper() not in LOG_LEVELS:
        raise ValueError(f"'level' in logging must be one of: {list(LOG_LEVELS)}")

    return MarketplaceConfig(
        quality=quality,
        matching=matching,
        ads=ads,
        revenue=revenue,
        db_path=db_path,
        log_level=log_level.upper(),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _string_list(data: Dict, key: str, default: List[str], path: str) -> List[str]:
    value = data.get(key, default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"'{key}' in {path} must be a list of strings")
    return value


def _parse_quality_tiers(data: Any) -> QualityTable:
    """Parse ``{tier: multiplier}``; a ``standard`` tier is required as fallback."""
    if not isinstance(data, dict) or not data:
        raise ValueError("'quality_tiers' must be a non-empty dictionary")
    if 'standard' not in data:
        raise ValueError("'quality_tiers' must define a 'standard' tier")

    levels = {}
    for tier, multiplier in data.items():
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
            raise ValueError(f"Quality tier '{tier}' multiplier must be a number")
        levels[str(tier)] = QualityLevel(str(tier), float(multiplier))
    return QualityTable(levels)


def _parse_inventory(data: Any) -> Tuple[Dict[str, Any], ...]:
    """Validate ad definitions; values are checked again when ads are built."""
    if not isinstance(data, list):
        raise ValueError("'inventory' in ads must be a list")

    inventory = []
    seen_ids = set()
    for index, ad_data in enumerate(data):
        path = f"ads.inventory[{index}]"
        if not isinstance(ad_data, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(ad_data.keys()) - _AD_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = _AD_KEYS - set(ad_data.keys())
        if missing:
            raise ValueError(f"Missing keys in {path}: {sorted(missing)}")
        if ad_data['id'] in seen_ids:
            raise ValueError(f"Duplicate ad id in {path}: {ad_data['id']}")
        seen_ids.add(ad_data['id'])

        cpm = ad_data['cpm']
        if isinstance(cpm, bool) or not isinstance(cpm, (int, float)) or cpm <= 0:
            raise ValueError(f"'cpm' in {path} must be > 0")
        ctr = ad_data['ctr']
        if isinstance(ctr, bool) or not isinstance(ctr, (int, float)) or not 0 <= ctr <= 1:
            raise ValueError(f"'ctr' in {path} must be within [0, 1]")
        keywords = ad_data['keywords']
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ValueError(f"'keywords' in {path} must be a list of strings")

        inventory.append(dict(
            id=str(ad_data['id']),
            category=str(ad_data['category']),
            content=str(ad_data['content']),
            keywords=list(keywords),
            cpm=str(cpm),
            ctr=float(ctr),
        ))
    return tuple(inventory)


@dataclass(frozen=True)
class ProviderSpec:
    """A provider declaration read from a providers file."""
    name: str
    vram_gb: float
    core_count: int
    models: Tuple[str, ...]
    price_per_token: Decimal
    endpoint: Optional[str] = None


_PROVIDER_KEYS = {'name', 'vram_gb', 'core_count', 'models', 'price_per_token', 'endpoint'}


def load_provider_specs(path: str) -> List[ProviderSpec]:
    """Load provider declarations from a YAML file.

    The file holds a ``providers`` list; each entry needs ``name``,
    ``vram_gb``, ``core_count``, ``models`` and ``price_per_token``.
    Pricing and capability rules are enforced at registration, not here.

    Args:
        path: Path to YAML providers file

    Returns:
        Provider declarations in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is malformed
    """
    providers_path = Path(path)
    if not providers_path.exists():
        raise FileNotFoundError(f"Providers file not found: {path}")

    with open(providers_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or 'providers' not in raw:
        raise ValueError("Providers file must contain a 'providers' list")
    entries = raw['providers']
    if not isinstance(entries, list):
        raise ValueError("'providers' must be a list")

    specs = []
    for index, entry in enumerate(entries):
        path_label = f"providers[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path_label} must be a dictionary")
        unknown_keys = set(entry.keys()) - _PROVIDER_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path_label}: {unknown_keys}")
        missing = (_PROVIDER_KEYS - {'endpoint'}) - set(entry.keys())
        if missing:
            raise ValueError(f"Missing keys in {path_label}: {sorted(missing)}")
        models = entry['models']
        if not isinstance(models, list) or not all(isinstance(m, str) for m in models):
            raise ValueError(f"'models' in {path_label} must be a list of strings")

        specs.append(ProviderSpec(
            name=str(entry['name']),
            vram_gb=_number(entry, 'vram_gb', 0, path_label),
            core_count=_int(entry, 'core_count', 0, path_label),
            models=tuple(models),
            price_per_token=Decimal(str(_number(entry, 'price_per_token', 0, path_label))),
            endpoint=entry.get('endpoint'),
        ))
    return specs

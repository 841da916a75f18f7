import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from ambulink.core.domain import CapabilityTier, Priority

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "data" / "config.json"


def load_config(path: str = None) -> Dict[str, Any]:
    """
    Load the JSON config holding dispatch timings, tier policy and scoring weights.
    Path resolution: explicit argument, then CONFIG_PATH, then data/config.json.
    """
    config_path = Path(path or os.getenv("CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path.resolve()}")

    with config_path.open("r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    return data


DEFAULT_REQUIRED_TIERS = {
    Priority.CRITICAL: CapabilityTier.ADVANCED,
    Priority.HIGH: CapabilityTier.INTERMEDIATE,
    Priority.MEDIUM: CapabilityTier.BASIC,
    Priority.LOW: CapabilityTier.BASIC,
}


@dataclass(frozen=True)
class MatchingWeights:
    specialty_exact: float = 40.0
    specialty_general: float = 20.0
    equipment: float = 30.0
    beds: float = 20.0
    no_beds_penalty: float = 50.0
    distance: float = 10.0
    distance_horizon_km: float = 20.0
    rating: float = 5.0
    emergency_ready: float = 5.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MatchingWeights":
        weights_cfg = (config or {}).get("weights", {}) or {}
        defaults = cls()
        return cls(**{
            name: float(weights_cfg.get(name, getattr(defaults, name)))
            for name in defaults.__dataclass_fields__
        })


@dataclass(frozen=True)
class DispatchSettings:
    """
    Immutable runtime knobs for the coordinator, the fleet and the reservation book.
    Built from the `dispatch` and `required_tiers` sections of config.json.
    """
    search_radius_km: float = 10.0
    average_speed_kmh: float = 40.0
    code_ttl_minutes: float = 5.0
    bed_hold_buffer_minutes: float = 15.0
    broadcast_retry_seconds: float = 30.0
    offer_timeout_seconds: float = 15.0
    max_broadcast_attempts: int = 3
    notify_timeout_seconds: float = 2.0
    settlement_timeout_seconds: float = 5.0
    retention_minutes: float = 60.0
    purge_after_minutes: float = 1440.0
    sweep_interval_seconds: float = 60.0
    broadcast_workers: int = 8
    required_tiers: Dict[Priority, CapabilityTier] = field(
        default_factory=lambda: dict(DEFAULT_REQUIRED_TIERS)
    )
    weights: MatchingWeights = field(default_factory=MatchingWeights)

    def required_tier(self, priority: Priority) -> CapabilityTier:
        return self.required_tiers.get(priority, CapabilityTier.BASIC)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DispatchSettings":
        config = config or {}
        dispatch_cfg = config.get("dispatch", {}) or {}
        tiers_cfg = config.get("required_tiers", {}) or {}
        defaults = cls()

        tiers = dict(DEFAULT_REQUIRED_TIERS)
        for priority_name, tier_name in tiers_cfg.items():
            tiers[Priority.coerce(priority_name)] = CapabilityTier.parse(tier_name)

        return cls(
            search_radius_km=float(dispatch_cfg.get("search_radius_km", defaults.search_radius_km)),
            average_speed_kmh=float(dispatch_cfg.get("average_speed_kmh", defaults.average_speed_kmh)),
            code_ttl_minutes=float(dispatch_cfg.get("code_ttl_minutes", defaults.code_ttl_minutes)),
            bed_hold_buffer_minutes=float(
                dispatch_cfg.get("bed_hold_buffer_minutes", defaults.bed_hold_buffer_minutes)
            ),
            broadcast_retry_seconds=float(
                dispatch_cfg.get("broadcast_retry_seconds", defaults.broadcast_retry_seconds)
            ),
            offer_timeout_seconds=float(dispatch_cfg.get("offer_timeout_seconds", defaults.offer_timeout_seconds)),
            max_broadcast_attempts=int(dispatch_cfg.get("max_broadcast_attempts", defaults.max_broadcast_attempts)),
            notify_timeout_seconds=float(
                dispatch_cfg.get("notify_timeout_seconds", defaults.notify_timeout_seconds)
            ),
            settlement_timeout_seconds=float(
                dispatch_cfg.get("settlement_timeout_seconds", defaults.settlement_timeout_seconds)
            ),
            retention_minutes=float(dispatch_cfg.get("retention_minutes", defaults.retention_minutes)),
            purge_after_minutes=float(dispatch_cfg.get("purge_after_minutes", defaults.purge_after_minutes)),
            sweep_interval_seconds=float(
                dispatch_cfg.get("sweep_interval_seconds", defaults.sweep_interval_seconds)
            ),
            broadcast_workers=int(dispatch_cfg.get("broadcast_workers", defaults.broadcast_workers)),
            required_tiers=tiers,
            weights=MatchingWeights.from_config(config),
        )

"""
Utility functions for the FieldOps data layer.
Includes config loading, ZIP normalization, and money rounding.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from functools import lru_cache

import yaml


# --- Configuration Loading ---

@lru_cache(maxsize=1)
def load_config() -> dict:
    """Load FieldOps configuration from YAML file.

    Cached for the process lifetime; restart to pick up YAML changes.
    """
    config_path = Path(__file__).parent / "config" / "fieldops.yaml"
    with open(config_path, "r") as f:
        return yaml.safe_load(f)


def get_backend_config() -> dict:
    """Get REST backend paths, timeout and retry policy."""
    config = load_config()
    defaults = {
        "rest_path": "/rest/v1",
        "auth_path": "/auth/v1",
        "timeout_seconds": 30,
        "max_retries": 3,
        "base_delay_seconds": 1.0,
        "max_delay_seconds": 30.0,
    }
    return {**defaults, **config.get("backend", {})}


def get_functions_config() -> dict:
    """Get serverless function paths and timeout."""
    config = load_config()
    defaults = {
        "parse_operating_plan": "/.netlify/functions/parse-operating-plan",
        "timeout_seconds": 120,
    }
    return {**defaults, **config.get("functions", {})}


def get_cache_config() -> dict:
    """Get query cache configuration."""
    config = load_config()
    return config.get("cache", {"ttl_seconds": 300, "enabled": True})


def get_quote_defaults() -> dict:
    """Get defaults applied to new quotes and invoices."""
    config = load_config()
    return config.get("quote_defaults", {"payment_terms": "Net 30", "tax_rate_percent": 8.25})


def get_approval_thresholds() -> dict:
    """Get thresholds that flag a quote for manager approval."""
    config = load_config()
    return config.get(
        "approval_thresholds",
        {"min_margin_percent": 15, "max_discount_percent": 10, "max_total": 25000},
    )


def get_routing_config() -> dict:
    """Get travel estimate settings for crew routing."""
    config = load_config()
    return config.get(
        "routing",
        {"average_speed_mph": 35, "road_factor": 1.3, "minutes_per_stop": 0},
    )


def get_assignment_weights() -> dict:
    """Get crew suggestion weights (total 100)."""
    config = load_config()
    return config.get("assignment", {}).get("weights", {
        "preference": 25,
        "territory": 20,
        "skills": 25,
        "capacity": 20,
        "proximity": 10,
    })


def get_proficiency_bonus(proficiency: str | None) -> float:
    """Get skill score multiplier for a crew proficiency level."""
    config = load_config()
    bonuses = config.get("assignment", {}).get("proficiency_bonus", {})
    return bonuses.get(proficiency or "standard", bonuses.get("standard", 1.0))


def get_default_crew_capacity() -> int:
    """Get daily linear-feet capacity assumed for crews without one."""
    config = load_config()
    return config.get("assignment", {}).get("default_max_daily_lf", 200)


def get_bonus_defaults() -> dict:
    """Get default multipliers for imported bonus KPIs."""
    config = load_config()
    return config.get("bonus_kpis", {"min_multiplier": 0.5, "max_multiplier": 2.0})


# --- ZIP Handling ---

ZIP_PATTERN = re.compile(r"^\d{5}$")


def normalize_zip(zip_code: str | None) -> str | None:
    """Normalize a ZIP or ZIP+4 to its 5-digit form.

    Pads truncated ZIPs (e.g., "501" → "00501") the way spreadsheets mangle
    leading zeros. Returns None if the value cannot be a US ZIP.
    """
    if zip_code is None:
        return None

    value = str(zip_code).strip()
    if not value:
        return None

    value = value.split("-")[0]
    if not value.isdigit() or len(value) > 5:
        return None

    value = value.zfill(5)
    return value if ZIP_PATTERN.match(value) else None


# --- Money ---

def round_money(amount: float | None) -> float:
    """Round a currency amount to cents, treating None as 0."""
    return round(float(amount or 0), 2)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero (2.5 -> 3, 1.45 -> 1.5), unlike round()."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))

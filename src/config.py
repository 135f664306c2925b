"""Central configuration loader for the valuation lab."""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Project root is the parent of the src/ directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(PROJECT_ROOT / ".env")


def load_settings() -> dict:
    """Load settings from configs/settings.yaml."""
    settings_path = PROJECT_ROOT / "configs" / "settings.yaml"
    with open(settings_path) as f:
        return yaml.safe_load(f) or {}


SETTINGS = load_settings()


def market_assumption(key: str, default: float) -> float:
    """Read a capital-market constant (risk-free rate, ERP, tax rate)."""
    value = SETTINGS.get("market", {}).get(key)
    return default if value is None else float(value)


# --- API Keys ---
class Keys:
    TWELVE_DATA = os.getenv("TWELVE_DATA_API_KEY", "")


# --- Paths ---
class Paths:
    DATA_CACHE = PROJECT_ROOT / "data" / "cache"

"""EngineRegistry: discovers and manages valuation engines."""

from __future__ import annotations
import importlib
from typing import TYPE_CHECKING

from src.config import SETTINGS
from src.utils.logger import setup_logger

if TYPE_CHECKING:
    from src.analysis.base import BaseEngine

logger = setup_logger("registry")

_registry_instance = None


def get_registry() -> EngineRegistry:
    """Get or create the singleton registry."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = EngineRegistry()
        _registry_instance.auto_discover()
    return _registry_instance


class EngineRegistry:
    """Central registry of all available engines, keyed by model id."""

    def __init__(self):
        self._engines: dict[str, BaseEngine] = {}

    def register(self, engine: BaseEngine) -> None:
        self._engines[engine.model_id] = engine
        logger.info("Registered engine: %s", engine.model_id)

    def get(self, model_id: str) -> BaseEngine | None:
        return self._engines.get(model_id)

    def items(self):
        return self._engines.items()

    def names(self) -> list[str]:
        return list(self._engines.keys())

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._engines

    def auto_discover(self, registry_config: dict | None = None) -> None:
        """Load engines from the settings.yaml registry config.

        An engine that fails to import is logged and skipped.
        """
        if registry_config is None:
            registry_config = SETTINGS.get("analysis", {}).get("registry", {})

        for name, conf in registry_config.items():
            if not conf.get("enabled", True):
                logger.info("Skipping disabled engine: %s", name)
                continue

            try:
                mod = importlib.import_module(conf["module"])
                cls = getattr(mod, conf["class"])
                self.register(cls())
            except Exception as e:
                logger.error("Failed to load engine %s: %s", name, e)

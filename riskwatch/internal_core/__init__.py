from .config import RiskwatchConfig, load_config
from .store import InMemoryClinicalStore

__all__ = ["RiskwatchConfig", "load_config", "InMemoryClinicalStore"]

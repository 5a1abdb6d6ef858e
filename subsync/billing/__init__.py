from .engine import EngineSettings, Outcome, ReconciliationEngine

__all__ = ["EngineSettings", "Outcome", "ReconciliationEngine"]

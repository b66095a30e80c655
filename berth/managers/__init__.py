"""Manager layer - session workflows."""

from berth.managers.reconciler import Reconciler
from berth.managers.session import SessionGuard, SessionOrchestrator

__all__ = ["Reconciler", "SessionGuard", "SessionOrchestrator"]

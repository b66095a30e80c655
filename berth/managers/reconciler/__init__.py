from berth.managers.reconciler.reconciler import Reconciler, live_status

__all__ = ["Reconciler", "live_status"]

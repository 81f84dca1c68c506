from engram.lifecycle.manager import LifecycleManager, LifecycleResult

__all__ = ["LifecycleManager", "LifecycleResult"]

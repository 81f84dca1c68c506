from engram.consolidation.cycle import LEASE_NAME, ConsolidationCycle, CycleScheduler

__all__ = ["ConsolidationCycle", "CycleScheduler", "LEASE_NAME"]

from engram.retrieval.recall import Recall, rank

__all__ = ["Recall", "rank"]

"""engram: consolidates coding-session tool use into confidence-scored rules."""

__version__ = "0.1.0"

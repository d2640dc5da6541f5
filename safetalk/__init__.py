"""SafeTalk: AI-mediated conflict resolution for co-parents."""

__version__ = "1.0.0"

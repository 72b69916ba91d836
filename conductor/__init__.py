"""conductor: intent-driven orchestration of capability providers."""

__version__ = "0.1.0"

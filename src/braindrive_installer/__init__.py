"""BrainDrive installer - LLM-driven installation over an audited operation catalog."""

__version__ = "0.1.0"

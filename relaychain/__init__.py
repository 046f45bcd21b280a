"""relaychain - streaming execution engine for chains of LLM agents."""

__version__ = "0.1.0"

"""taskrelay: queue-driven dispatch of prompts to a remote coding agent."""

__version__ = "0.1.0"

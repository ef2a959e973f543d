"""chatgate - chat-driven session orchestrator for a tool-using coding agent."""

__version__ = "0.1.0"

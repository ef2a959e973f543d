"""Base class for agent tools."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Tool(ABC):
    """
    A capability the engine can invoke.

    Tools report failure by returning a string that starts with ``"Error"``
    rather than raising, so the model can read and react to it.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Description shown to the model."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema for the tool arguments."""

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Run the tool and return its textual result."""

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        errors: list[str] = []
        for key in self.parameters.get("required", []):
            if key not in params:
                errors.append(f"missing required parameter '{key}'")
        return errors

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

"""Base class for AI-callable tools."""

from __future__ import annotations

from abc import ABC, abstractmethod

from callbridge.models.booking import ToolRequest


class BaseTool(ABC):
    """A function the realtime AI may call during a session."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters_schema(self) -> dict: ...

    @abstractmethod
    async def execute(self, request: ToolRequest, session_key: str) -> dict:
        """Run the tool with a validated request and return a JSON-ready result."""

    def to_realtime_schema(self) -> dict:
        """Function definition in the shape ``session.update`` expects."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

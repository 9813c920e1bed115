# venice/models.py
"""
Typed schema for streamed chat completion chunks.

Request and response bodies are otherwise passed through as plain JSON
values; only the streamed chunk has a typed form, because the stream
iterator needs to hand out something richer than a dict per event.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ChunkDelta:
    """
    Incremental message content carried by a chunk.

    Attributes:
        role: Message role, present on the first chunk only
        content: Text added by this chunk
    """
    role: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChunkDelta":
        data = data or {}
        return cls(role=data.get("role"), content=data.get("content"))


@dataclass
class ChunkChoice:
    """
    One choice within a chunk.

    Attributes:
        index: Choice index
        delta: Content added to this choice
        finish_reason: Why generation stopped, on the final chunk
    """
    index: int
    delta: ChunkDelta
    finish_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkChoice":
        return cls(
            index=int(data.get("index", 0)),
            delta=ChunkDelta.from_dict(data.get("delta")),
            finish_reason=data.get("finish_reason"),
        )


@dataclass
class ChatCompletionChunk:
    """
    One event of a streamed chat completion.

    Attributes:
        id: Completion identifier, shared by all chunks of a completion
        object: Object type (``"chat.completion.chunk"``)
        created: Unix timestamp of the completion
        model: Model that produced the completion
        choices: Choices updated by this chunk
        raw: The decoded JSON the chunk was built from
    """
    id: str
    object: str = "chat.completion.chunk"
    created: int = 0
    model: str = ""
    choices: List[ChunkChoice] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatCompletionChunk":
        """
        Build a chunk from a decoded stream event.

        Raises:
            TypeError: If ``data`` is not an object or ``choices`` is not a list
            KeyError: If ``id`` is missing
        """
        if not isinstance(data, dict):
            raise TypeError(f"Expected a JSON object, got {type(data).__name__}")

        choices = data.get("choices", [])
        if not isinstance(choices, list):
            raise TypeError("'choices' must be a list")

        return cls(
            id=data["id"],
            object=data.get("object", "chat.completion.chunk"),
            created=int(data.get("created") or 0),
            model=data.get("model", ""),
            choices=[ChunkChoice.from_dict(choice) for choice in choices],
            raw=data,
        )

    @property
    def text(self) -> str:
        """Content added to the first choice, or an empty string."""
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""

    @property
    def finish_reason(self) -> Optional[str]:
        """Finish reason of the first choice."""
        if not self.choices:
            return None
        return self.choices[0].finish_reason

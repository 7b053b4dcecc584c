"""Generic "generate content" model spoken by the engine and the round loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Sequence, Union

Role = Literal["user", "model", "system"]


@dataclass
class FunctionCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class FunctionResponse:
    """Result of one tool call; ``response`` holds either ``output`` or ``error``."""

    id: str
    name: str
    response: dict[str, Any]

    @property
    def error(self) -> str | None:
        value = self.response.get("error")
        return value if isinstance(value, str) else None

    @property
    def output(self) -> str | None:
        value = self.response.get("output")
        return value if isinstance(value, str) else None


@dataclass
class Part:
    """One unit of content. Exactly one payload field is expected to be set."""

    text: str | None = None
    thought: bool = False
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None

    @classmethod
    def from_text(cls, text: str) -> "Part":
        return cls(text=text)

    @property
    def is_text(self) -> bool:
        return self.text is not None and not self.thought

    def to_dict(self) -> dict[str, Any]:
        if self.function_call is not None:
            payload: dict[str, Any] = {
                "name": self.function_call.name,
                "args": self.function_call.args,
            }
            if self.function_call.id is not None:
                payload["id"] = self.function_call.id
            return {"function_call": payload}
        if self.function_response is not None:
            return {
                "function_response": {
                    "id": self.function_response.id,
                    "name": self.function_response.name,
                    "response": self.function_response.response,
                }
            }
        if self.thought:
            return {"thought": True, "text": self.text}
        return {"text": self.text}


@dataclass
class Content:
    role: Role
    parts: list[Part] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [part.to_dict() for part in self.parts]}


# A query is either plain text, a single part, or an ordered list of them.
PartUnion = Union[str, Part]
PartListUnion = Union[str, Part, Sequence[PartUnion]]
ContentListUnion = Union[Content, PartUnion, Sequence[Union[Content, PartUnion]]]


@dataclass
class FunctionDeclaration:
    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


@dataclass
class GenerateContentConfig:
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    system_instruction: str | None = None
    tools: list[FunctionDeclaration] = field(default_factory=list)


@dataclass
class GenerateContentRequest:
    model: str
    contents: ContentListUnion
    config: GenerateContentConfig = field(default_factory=GenerateContentConfig)
    prompt_id: str | None = None


@dataclass
class UsageMetadata:
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0


@dataclass
class GenerateContentResponse:
    """One candidate's worth of parts, streamed or complete."""

    parts: list[Part] = field(default_factory=list)
    role: Role = "model"
    finish_reason: str | None = None
    usage_metadata: UsageMetadata | None = None

    @property
    def text(self) -> str:
        return "".join(part.text or "" for part in self.parts if part.is_text)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [
            part.function_call for part in self.parts if part.function_call is not None
        ]


@dataclass
class CountTokensResponse:
    total_tokens: int


def to_parts(query: PartListUnion) -> list[Part]:
    """Normalize a query into a flat list of parts."""

    if isinstance(query, str):
        return [Part.from_text(query)]
    if isinstance(query, Part):
        return [query]
    parts: list[Part] = []
    for item in query:
        if isinstance(item, str):
            parts.append(Part.from_text(item))
        elif isinstance(item, Part):
            parts.append(item)
        else:
            # One level of nesting is tolerated when a merged query is replayed.
            parts.extend(to_parts(item))
    return parts


__all__ = [
    "Content",
    "ContentListUnion",
    "CountTokensResponse",
    "FunctionCall",
    "FunctionDeclaration",
    "FunctionResponse",
    "GenerateContentConfig",
    "GenerateContentRequest",
    "GenerateContentResponse",
    "Part",
    "PartListUnion",
    "PartUnion",
    "Role",
    "UsageMetadata",
    "to_parts",
]

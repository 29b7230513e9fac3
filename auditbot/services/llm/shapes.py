"""Known response bodies of the generateText endpoint.

The endpoint has answered in several layouts across API versions and SDKs.
``decode_response`` maps a body onto exactly one variant, checked in order,
with ``Unrecognized`` as the explicit fallback.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class CandidatesShape:
    """``{"candidates": [{"content": ...}]}`` (also ``output`` for text-bison)."""

    text: str


@dataclass(frozen=True)
class OutputTextShape:
    """``{"output_text": "..."}``"""

    text: str


@dataclass(frozen=True)
class OutputListShape:
    """``{"output": [{"content": ...}]}``"""

    text: str


@dataclass(frozen=True)
class ResponseFieldShape:
    """``{"response": "..."}``"""

    text: str


@dataclass(frozen=True)
class BareStringShape:
    text: str


@dataclass(frozen=True)
class Unrecognized:
    keys: tuple[str, ...] = ()
    text: Optional[str] = None


GenerationShape = Union[
    CandidatesShape,
    OutputTextShape,
    OutputListShape,
    ResponseFieldShape,
    BareStringShape,
    Unrecognized,
]


def _content_text(content: Any) -> Optional[str]:
    """Text from a content value: a string, ``{"parts": [{"text"}]}`` or a list of parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        if isinstance(content.get("text"), str):
            return content["text"]
        return _content_text(content.get("parts"))
    if isinstance(content, list):
        texts = [t for t in (_content_text(part) for part in content) if t]
        return "".join(texts) if texts else None
    return None


def _first(items: Any) -> Optional[dict]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def decode_response(data: Any) -> GenerationShape:
    if isinstance(data, str):
        return BareStringShape(data)
    if not isinstance(data, dict):
        return Unrecognized()

    candidate = _first(data.get("candidates"))
    if candidate is not None:
        text = _content_text(candidate.get("content"))
        if text is None:
            text = _content_text(candidate.get("output"))
        if text is not None:
            return CandidatesShape(text)

    if isinstance(data.get("output_text"), str):
        return OutputTextShape(data["output_text"])

    output = _first(data.get("output"))
    if output is not None:
        text = _content_text(output.get("content"))
        if text is not None:
            return OutputListShape(text)

    if isinstance(data.get("response"), str):
        return ResponseFieldShape(data["response"])

    return Unrecognized(keys=tuple(sorted(data.keys())))

"""Wire schema for Perplexity SSE frames.

Every field is optional: the upstream schema is reverse-engineered and partial
frames are the norm. Presence is tracked through pydantic's ``model_fields_set``
so the merger can tell an absent field from an explicit override.

Validation never rejects a JSON object. Values of an unexpected shape are
neutralised field by field (coerced, filtered or set to None) so one odd
nested value cannot cost the rest of the frame.
"""
from __future__ import annotations

import math
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict


def _lenient_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _lenient_bool(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _lenient_int(value: Any) -> Any:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None


def _str_items(value: Any) -> Any:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str)]


def _object(value: Any) -> Any:
    return value if isinstance(value, (dict, BaseModel)) else None


def _object_items(value: Any) -> Any:
    # Non-object entries are skipped, the rest of the list survives.
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, (dict, BaseModel))]


LenientStr = Annotated[str | None, BeforeValidator(_lenient_str)]
LenientBool = Annotated[bool | None, BeforeValidator(_lenient_bool)]
LenientInt = Annotated[int | None, BeforeValidator(_lenient_int)]
LenientStrList = Annotated[list[str] | None, BeforeValidator(_str_items)]


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def present(self) -> dict[str, Any]:
        """Fields that were explicitly present on the wire (or set by a merge)."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class WebResult(BaseModel):
    """Common source shape used everywhere after normalisation."""

    model_config = ConfigDict(extra="ignore")

    name: LenientStr = None
    url: LenientStr = None
    snippet: LenientStr = None
    timestamp: LenientStr = None


class StreamSource(BaseModel):
    """Legacy flat source shape from the top-level ``sources_list``."""

    model_config = ConfigDict(extra="ignore")

    title: LenientStr = None
    url: LenientStr = None
    snippet: LenientStr = None
    date: LenientStr = None

    def to_web_result(self) -> WebResult:
        fields: dict[str, Any] = {}
        if "title" in self.model_fields_set:
            fields["name"] = self.title
        if "url" in self.model_fields_set:
            fields["url"] = self.url
        if "snippet" in self.model_fields_set:
            fields["snippet"] = self.snippet
        if "date" in self.model_fields_set:
            fields["timestamp"] = self.date
        return WebResult(**fields)


class MarkdownBlock(WireModel):
    answer: LenientStr = None
    chunks: LenientStrList = None
    chunk_starting_offset: LenientInt = None


class WebResultBlock(WireModel):
    web_results: Annotated[list[WebResult] | None, BeforeValidator(_object_items)] = None


class StreamBlock(WireModel):
    intended_usage: LenientStr = None
    markdown_block: Annotated[MarkdownBlock | None, BeforeValidator(_object)] = None
    web_result_block: Annotated[WebResultBlock | None, BeforeValidator(_object)] = None


class StreamEvent(WireModel):
    status: LenientStr = None
    final: LenientBool = None
    text: LenientStr = None
    blocks: Annotated[list[StreamBlock] | None, BeforeValidator(_object_items)] = None
    sources_list: Annotated[list[StreamSource] | None, BeforeValidator(_object_items)] = None
    display_model: LenientStr = None
    uuid: LenientStr = None
    error_code: LenientStr = None
    error_message: LenientStr = None

    @property
    def is_terminal(self) -> bool:
        return bool(self.final) or self.status == "COMPLETED"

    @property
    def has_error(self) -> bool:
        return bool(self.error_code) or bool(self.error_message)

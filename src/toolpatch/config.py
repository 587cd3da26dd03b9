from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from toolpatch.schema import SchemaTransformConfig


class PatchOptions(BaseModel):
    """Behaviour switches for a patched transport.

    Resolved once when the transport is built.  Accepts the
    ``compatibility`` section of a provider config as-is::

        PatchOptions.model_validate({
            "patch_tool_call_index": True,
            "handle_thought_signature": True,
        })
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    transform_schemas: bool = True
    patch_tool_call_index: bool = True
    # Off by default: some providers send legitimate chunks that look empty.
    filter_empty_chunks: bool = False
    handle_thought_signature: bool = False
    clear_signature_after_injection: bool = False
    additional_keywords_to_remove: tuple[str, ...] = ()
    custom_keyword_transforms: dict[str, Callable[[Any], dict[str, Any]]] = Field(
        default_factory=dict
    )
    session_header: str = "x-toolpatch-session"
    max_sessions: int = Field(default=1000, ge=1)

    @model_validator(mode="after")
    def _filtering_needs_index_patching(self) -> "PatchOptions":
        # Empty-chunk filtering runs inside the index-patching pass.
        if self.filter_empty_chunks and not self.patch_tool_call_index:
            raise ValueError(
                "filter_empty_chunks requires patch_tool_call_index"
            )
        return self

    @property
    def patches_stream(self) -> bool:
        return self.patch_tool_call_index or self.handle_thought_signature

    def schema_config(self) -> SchemaTransformConfig:
        return SchemaTransformConfig.default().extend(
            remove=self.additional_keywords_to_remove,
            transforms=self.custom_keyword_transforms,
        )

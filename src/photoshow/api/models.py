"""Pydantic request models for the Photoshow API.

These models define the JSON schema for the endpoints that accept a body.
FastAPI uses them for automatic request validation and OpenAPI documentation
generation.  Responses are plain dicts built from the core's ``to_dict``
helpers so the cache and quota shapes stay defined in one place.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``: the prompt and optional tags for a
    single generated image.
ImageUpdateRequest
    Payload for ``PATCH /api/images/{id}``: new tags and/or prompt for a
    cached image.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from photoshow.core.images import parse_tags


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        prompt: Text prompt sent to the image provider.  Surrounding
            whitespace is stripped and an empty prompt is rejected.
        tags: Optional tags attached to the generated image.
    """

    prompt: str = Field(
        ...,
        description="Text prompt for the image provider.",
    )
    tags: list[str] = Field(
        default_factory=list,
        description="Tags attached to the generated image.",
    )

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be empty")
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v):
        return parse_tags(v)


class ImageUpdateRequest(BaseModel):
    """Request body for the ``PATCH /api/images/{id}`` endpoint.

    Fields left as ``None`` are not changed.

    Attributes:
        tags: Replacement tag list.
        prompt: Replacement prompt.
    """

    tags: list[str] | None = Field(
        default=None,
        description="Replacement tag list.",
    )
    prompt: str | None = Field(
        default=None,
        description="Replacement prompt.",
    )

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v):
        return None if v is None else parse_tags(v)

    def changed_fields(self) -> dict:
        """Return only the fields the client supplied."""
        return self.model_dump(exclude_none=True)

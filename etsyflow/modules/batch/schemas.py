from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TAGS = 7


class SuggestedMetadata(BaseModel):
    """Listing metadata suggested by the vision analysis call."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=140, description="SEO optimized product title")
    tags: List[str] = Field(..., min_length=1, description="5-7 relevant search tags")
    category: str = Field(..., min_length=1, description="Best fit Etsy category")
    visual_description: str = Field(
        ...,
        alias="visualDescription",
        description="Brief visual description of textures and materials"
    )
    suggested_prompt: Optional[str] = Field(
        None,
        alias="suggestedPrompt",
        description="Enhancement prompt proposed by the analysis model"
    )

    @field_validator("title", mode="before")
    @classmethod
    def clip_title(cls, v):
        if isinstance(v, str):
            return v.strip()[:140]
        return v

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        tags = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in tags:
                tags.append(tag)
        if not tags:
            raise ValueError("at least one non-empty tag is required")
        return tags[:MAX_TAGS]

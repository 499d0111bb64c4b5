"""Pydantic schemas for generated video metadata."""

from typing import List

from pydantic import BaseModel, Field, field_validator

MAX_TITLE_LENGTH = 80
MAX_TAGS = 10


class VideoMetadata(BaseModel):
    """Title, description and tags used when publishing a video."""

    title: str = Field(description="Catchy video title in the target language, at most 80 characters")
    description: str = Field(default="", description="Two or three sentence summary of the video")
    tags: List[str] = Field(default_factory=list, description="Up to 10 short topic tags")

    @field_validator("title")
    @classmethod
    def truncate_title(cls, v: str) -> str:
        v = v.strip()
        if len(v) > MAX_TITLE_LENGTH:
            return v[:MAX_TITLE_LENGTH - 3] + "..."
        return v

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: List[str]) -> List[str]:
        seen = []
        for tag in v:
            tag = str(tag).strip().lstrip("#")
            if tag and tag not in seen:
                seen.append(tag)
        return seen[:MAX_TAGS]

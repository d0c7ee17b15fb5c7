from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from storyteller.utils.text import derive_title
from storyteller.utils.time import isoformat_utc, utcnow


class Story(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    theme: str
    content: str
    title: str
    image_url: Optional[str] = Field(None, alias='imageUrl')
    created_at: str = Field(alias='createdAt')

    @classmethod
    def new(cls, theme: str, content: str) -> 'Story':
        return cls(
            id=str(uuid.uuid4()),
            theme=theme,
            content=content,
            title=derive_title(content, theme),
            created_at=isoformat_utc(utcnow()),
        )

    def with_image(self, image_url: str) -> 'Story':
        return self.model_copy(update={'image_url': image_url})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StoryGenerationRequest(BaseModel):
    prompt: str = ''


class ImageGenerationRequest(BaseModel):
    prompt: str = ''
    story: Optional[str] = None


class CreateStoryRequest(BaseModel):
    theme: str = ''
    content: Optional[str] = None


class AttachImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: str = Field('', alias='imageUrl')

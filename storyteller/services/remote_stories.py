from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storyteller.db.models import Conversation, Message, StoryRecord
from storyteller.schemas import Story
from storyteller.utils.text import derive_title
from storyteller.utils.time import isoformat_utc, utcnow


def _parse_created_at(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (AttributeError, ValueError):
        return utcnow()


def _to_story(row: StoryRecord) -> Story:
    return Story(
        id=str(row.id),
        theme=row.theme,
        content=row.content,
        title=row.title or derive_title(row.content, row.theme),
        image_url=row.image_url or None,
        created_at=isoformat_utc(row.created_at),
    )


class RemoteStoryStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_user_stories(self, user_id: str, limit: int = 100) -> List[Story]:
        result = await self.session.execute(
            select(StoryRecord)
            .where(StoryRecord.user_id == user_id)
            .order_by(StoryRecord.created_at.desc())
            .limit(limit)
        )
        return [_to_story(row) for row in result.scalars().all()]

    async def save_story(self, user_id: str, story: Story) -> StoryRecord:
        row = await self.session.get(StoryRecord, story.id)
        if row is None:
            row = StoryRecord(id=story.id, user_id=user_id)
            self.session.add(row)
        row.title = story.title
        row.theme = story.theme
        row.content = story.content
        row.image_url = story.image_url
        row.created_at = _parse_created_at(story.created_at)
        await self.session.flush()
        return row

    async def set_image(self, story_id: str, user_id: str, image_url: str) -> Optional[Story]:
        row = await self.session.get(StoryRecord, story_id)
        if row is None or row.user_id != user_id:
            return None
        row.image_url = image_url
        await self.session.flush()
        return _to_story(row)

    async def record_conversation(self, user_id: str, story: Story, full_text: str) -> Conversation:
        now = utcnow()
        conversation = Conversation(user_id=user_id, title=story.title, created_at=now)
        self.session.add(conversation)
        await self.session.flush()
        self.session.add_all(
            [
                Message(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    role='user',
                    content=story.theme,
                    created_at=now,
                ),
                Message(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    role='assistant',
                    content=full_text,
                    created_at=now,
                ),
            ]
        )
        await self.session.flush()
        return conversation

    async def delete_user_story(self, story_id: str, user_id: str | None = None) -> None:
        stmt = delete(StoryRecord).where(StoryRecord.id == story_id)
        if user_id is not None:
            stmt = stmt.where(StoryRecord.user_id == user_id)
        await self.session.execute(stmt)

    async def clear_user_stories(self, user_id: str) -> None:
        await self.session.execute(delete(StoryRecord).where(StoryRecord.user_id == user_id))

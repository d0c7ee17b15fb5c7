from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyteller.config import get_settings
from storyteller.schemas import Story
from storyteller.services.dashscope_client import DashScopeError
from storyteller.services.poller import OutcomeKind, PollManager, PollOutcome
from storyteller.services.provider import StoryProvider
from storyteller.services.remote_stories import RemoteStoryStore
from storyteller.storage.local import LocalStoryStore
from storyteller.utils.logging import get_logger
from storyteller.utils.text import clamp_text


logger = get_logger('stories')

STORY_SYSTEM_PROMPT = (
    'You are a creative storyteller who writes engaging, imaginative short stories. '
    'Write stories that are captivating, well-structured, and suitable for all audiences.'
)

NOTICE_IMAGE_FAILED = 'Story generated! Image generation failed, but story was saved.'
NOTICE_IMAGE_PENDING = 'Story saved. The illustration is still being generated and was not attached.'
SUBMIT_FAILED = 'submit failed'
ILLUSTRATION_ERROR = 'illustration error'


class StoryGenerationError(RuntimeError):
    pass


def build_story_prompt(theme: str) -> str:
    return (
        f'Write a creative and engaging short story based on this theme: "{theme}". \n\n'
        'The story should be:\n'
        '- Approximately 300-500 words\n'
        '- Well-structured with a clear beginning, middle, and end\n'
        '- Engaging and imaginative\n'
        '- Suitable for all ages\n'
        '- Written in an engaging narrative style\n\n'
        f'Theme: {theme}\n\n'
        'Story:'
    )


def illustration_subject(theme: str) -> str:
    return f'A beautiful illustration for a story about: {theme}'


def build_image_prompt(prompt: str) -> str:
    return (
        f'Create a beautiful artistic illustration for a story. Subject: {prompt}. The image should be:\n'
        '- Visually appealing and suitable for the whole family\n'
        '- Drawn in a storybook illustration style\n'
        '- Rich in colour and engaging\n'
        '- Suitable for all ages\n'
        '- High quality and richly detailed'
    )


@dataclass(frozen=True)
class StoryResult:
    story: Story
    image: PollOutcome
    notice: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'story': self.story.to_json(),
            'image': self.image.to_dict(),
            'notice': self.notice,
        }


class StoryService:
    def __init__(
        self,
        provider: StoryProvider,
        local_store: LocalStoryStore,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        poller: PollManager | None = None,
    ) -> None:
        self.provider = provider
        self.local_store = local_store
        self.sessionmaker = sessionmaker
        self.settings = get_settings()
        self.poller = poller or PollManager(
            provider.fetch_task_status,
            max_attempts=self.settings.image_poll_max_attempts,
            interval_ms=self.settings.image_poll_interval_ms,
        )

    def _clean_theme(self, theme: str) -> str:
        theme = clamp_text((theme or '').strip(), self.settings.max_theme_length)
        if not theme:
            raise ValueError('missing_prompt')
        return theme

    async def generate_text(self, theme: str) -> str:
        theme = self._clean_theme(theme)
        try:
            return await self.provider.complete_story(STORY_SYSTEM_PROMPT, build_story_prompt(theme))
        except DashScopeError as exc:
            logger.warning('story_text_failed', error=str(exc), status_code=exc.status_code)
            raise StoryGenerationError(str(exc)) from exc

    async def stream_text(self, theme: str) -> AsyncIterator[str]:
        theme = self._clean_theme(theme)
        async for delta in self.provider.stream_story(STORY_SYSTEM_PROMPT, build_story_prompt(theme)):
            yield delta

    async def submit_illustration(self, prompt: str) -> Tuple[str, str]:
        record = await self.provider.submit_image_task(build_image_prompt(prompt))
        task_id = self.provider.extract_task_id(record)
        if not task_id:
            raise DashScopeError('DashScope image submit returned no task id')
        status = self.provider.get_status(record)
        logger.info('image_task_submitted', task_id=task_id, status=status)
        return task_id, status

    async def illustrate(self, prompt: str) -> PollOutcome:
        try:
            task_id, _ = await self.submit_illustration(prompt)
        except DashScopeError as exc:
            logger.warning('image_submit_failed', error=str(exc), status_code=exc.status_code)
            return PollOutcome.failed(SUBMIT_FAILED)
        return await self.poller.wait_for(task_id)

    async def create_story(
        self,
        theme: str,
        *,
        content: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> StoryResult:
        theme = self._clean_theme(theme)
        text = (content or '').strip() or await self.generate_text(theme)
        if not text:
            raise StoryGenerationError('empty story text')

        story = Story.new(theme, text)
        try:
            outcome = await self.illustrate(illustration_subject(theme))
        except Exception as exc:
            # The text is saved whatever happens to the illustration.
            logger.exception('image_failed', story_id=story.id, error=str(exc))
            outcome = PollOutcome.failed(ILLUSTRATION_ERROR)

        notice: Optional[str] = None
        if outcome.kind is OutcomeKind.READY and outcome.artifact_url:
            story = story.with_image(outcome.artifact_url)
        elif outcome.kind is OutcomeKind.TIMED_OUT:
            notice = NOTICE_IMAGE_PENDING
        else:
            notice = NOTICE_IMAGE_FAILED

        await self.persist(story, text, user_id=user_id)
        return StoryResult(story=story, image=outcome, notice=notice)

    async def persist(self, story: Story, full_text: str, *, user_id: Optional[str] = None) -> None:
        self.local_store.save(story)
        if not user_id or self.sessionmaker is None:
            return
        try:
            async with self.sessionmaker() as session:
                remote = RemoteStoryStore(session)
                await remote.save_story(user_id, story)
                await remote.record_conversation(user_id, story, full_text)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning('remote_persist_failed', story_id=story.id, user_id=user_id, error=str(exc))

from __future__ import annotations

import re
import time
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyteller.config import get_settings
from storyteller.db.session import create_all, create_sessionmaker
from storyteller.schemas import (
    AttachImageRequest,
    CreateStoryRequest,
    ImageGenerationRequest,
    StoryGenerationRequest,
)
from storyteller.services import poller_runtime
from storyteller.services.dashscope_client import DashScopeClient, DashScopeError
from storyteller.services.poller import OutcomeKind, PollManager, TaskRecord
from storyteller.services.remote_stories import RemoteStoryStore
from storyteller.services.stories import StoryGenerationError, StoryService
from storyteller.storage.local import LocalStoryStore
from storyteller.utils.logging import get_logger
from storyteller.utils.text import make_download_filename


logger = get_logger('web')

USER_ID_HEADER = 'X-User-Id'


def _user_id(request: Request) -> Optional[str]:
    value = (request.headers.get(USER_ID_HEADER) or '').strip()
    return value or None


def _is_http_url(url: str) -> bool:
    return bool(re.match(r'^https?://', url or '', re.IGNORECASE))


def _extension_for(content_type: str) -> str:
    if 'png' in content_type:
        return '.png'
    if 'jpeg' in content_type:
        return '.jpg'
    if 'webp' in content_type:
        return '.webp'
    return ''


def _content_disposition(filename: str, ext: str) -> str:
    # Header values must be latin-1; non-ASCII names go in filename* (RFC 6266).
    fallback = filename.encode('ascii', 'ignore').decode('ascii').strip('-. ')
    if not fallback or fallback == ext.lstrip('.'):
        fallback = f'story-image{ext}'
    value = f'attachment; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return value


def create_app(
    *,
    dashscope: DashScopeClient | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    local_store: LocalStoryStore | None = None,
) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title='Storyteller')
    owns_client = dashscope is None
    app.state.dashscope = dashscope or DashScopeClient()
    app.state.sessionmaker = sessionmaker or create_sessionmaker()
    app.state.local_store = local_store or LocalStoryStore(settings.local_store_path)

    async def fetch_status(task_id: str) -> TaskRecord:
        return await app.state.dashscope.fetch_task_status(task_id)

    app.state.poller = PollManager(
        fetch_status,
        max_attempts=settings.image_poll_max_attempts,
        interval_ms=settings.image_poll_interval_ms,
    )
    poller_runtime.set_poller(app.state.poller)

    def story_service() -> StoryService:
        return StoryService(
            app.state.dashscope,
            app.state.local_store,
            app.state.sessionmaker,
            poller=app.state.poller,
        )

    @app.on_event('startup')
    async def startup() -> None:
        if settings.database_auto_create:
            engine = app.state.sessionmaker.kw.get('bind')
            if engine is not None:
                await create_all(engine)

    @app.on_event('shutdown')
    async def shutdown() -> None:
        await app.state.poller.close()
        if poller_runtime.get_poller() is app.state.poller:
            poller_runtime.set_poller(None)
        if owns_client:
            await app.state.dashscope.close()

    @app.get('/health')
    async def health():
        return {'ok': True}

    @app.post('/api/generate')
    async def api_generate(payload: StoryGenerationRequest):
        if not payload.prompt.strip():
            return JSONResponse({'error': 'missing_prompt'}, status_code=400)
        logger.info('story_requested', prompt=payload.prompt)
        try:
            text = await story_service().generate_text(payload.prompt)
        except StoryGenerationError:
            return JSONResponse({'error': 'story_failed'}, status_code=502)
        return {'story': text}

    @app.post('/api/generate/stream')
    async def api_generate_stream(payload: StoryGenerationRequest):
        if not payload.prompt.strip():
            return JSONResponse({'error': 'missing_prompt'}, status_code=400)
        service = story_service()

        async def body() -> AsyncIterator[str]:
            try:
                async for delta in service.stream_text(payload.prompt):
                    yield delta
            except DashScopeError as exc:
                logger.warning('story_stream_failed', error=str(exc), status_code=exc.status_code)

        return StreamingResponse(body(), media_type='text/plain; charset=utf-8')

    @app.post('/api/image')
    async def api_image(payload: ImageGenerationRequest):
        if not payload.prompt.strip():
            return JSONResponse({'error': 'missing_prompt'}, status_code=400)
        outcome = await story_service().illustrate(payload.prompt)
        if outcome.kind is OutcomeKind.READY:
            return {'imageUrl': outcome.artifact_url}
        if outcome.kind is OutcomeKind.TIMED_OUT:
            return JSONResponse({'error': 'image_timed_out'}, status_code=504)
        return JSONResponse({'error': 'image_failed', 'reason': outcome.reason}, status_code=502)

    @app.post('/api/image/tasks')
    async def api_image_task_create(payload: ImageGenerationRequest):
        if not payload.prompt.strip():
            return JSONResponse({'error': 'missing_prompt'}, status_code=400)
        try:
            task_id, status = await story_service().submit_illustration(payload.prompt)
        except DashScopeError as exc:
            logger.warning('image_submit_failed', error=str(exc), status_code=exc.status_code)
            return JSONResponse({'error': 'image_submit_failed'}, status_code=502)
        return {'taskId': task_id, 'status': status}

    @app.get('/api/image/tasks/{task_id}')
    async def api_image_task_result(task_id: str):
        outcome = await app.state.poller.wait_for(task_id)
        return {'taskId': task_id, **outcome.to_dict()}

    @app.get('/api/download-image')
    async def api_download_image(url: str = '', title: str = ''):
        if not url:
            return JSONResponse({'error': 'missing_url'}, status_code=400)
        if not _is_http_url(url):
            return JSONResponse({'error': 'invalid_url'}, status_code=400)

        async with httpx.AsyncClient(timeout=settings.download_timeout_seconds) as client:
            try:
                resp = await client.get(url, follow_redirects=True)
            except httpx.HTTPError as exc:
                logger.warning('download_failed', url=url, error=str(exc))
                return JSONResponse({'error': 'fetch_failed'}, status_code=502)

        if resp.status_code >= 400:
            return JSONResponse({'error': 'fetch_failed'}, status_code=502)

        content_type = resp.headers.get('content-type', 'application/octet-stream')
        ext = _extension_for(content_type)
        if title.strip():
            filename = make_download_filename(title, 'story-image', ext or '.png')
        else:
            filename = f'story-image-{int(time.time() * 1000)}{ext}'
        headers = {
            'Content-Disposition': _content_disposition(filename, ext or '.png'),
            'Cache-Control': 'no-store',
        }
        return StreamingResponse(iter([resp.content]), media_type=content_type, headers=headers)

    @app.post('/api/stories')
    async def api_create_story(request: Request, payload: CreateStoryRequest):
        if not payload.theme.strip():
            return JSONResponse({'error': 'missing_prompt'}, status_code=400)
        try:
            result = await story_service().create_story(
                payload.theme,
                content=payload.content,
                user_id=_user_id(request),
            )
        except StoryGenerationError:
            return JSONResponse({'error': 'story_failed'}, status_code=502)
        return result.to_dict()

    @app.get('/api/stories')
    async def api_list_stories(request: Request):
        user_id = _user_id(request)
        if not user_id:
            return {'stories': [story.to_json() for story in app.state.local_store.list()]}
        async with app.state.sessionmaker() as session:
            stories = await RemoteStoryStore(session).list_user_stories(user_id, settings.remote_list_limit)
        return {'stories': [story.to_json() for story in stories]}

    @app.put('/api/stories/{story_id}/image')
    async def api_attach_story_image(request: Request, story_id: str, payload: AttachImageRequest):
        """Attach an illustration that finished after the story was saved."""
        if not _is_http_url(payload.image_url):
            return JSONResponse({'error': 'invalid_url'}, status_code=400)
        user_id = _user_id(request)
        story = None
        if user_id:
            async with app.state.sessionmaker() as session:
                story = await RemoteStoryStore(session).set_image(story_id, user_id, payload.image_url)
                await session.commit()
            if story is None:
                return JSONResponse({'error': 'story_not_found'}, status_code=404)

        # Signed-in stories are mirrored locally by persist(); keep that copy in step.
        local = app.state.local_store.get(story_id)
        if local is not None:
            local = local.with_image(payload.image_url)
            app.state.local_store.update(local)
        story = story or local
        if story is None:
            return JSONResponse({'error': 'story_not_found'}, status_code=404)
        return {'story': story.to_json()}

    @app.delete('/api/stories/{story_id}')
    async def api_delete_story(request: Request, story_id: str):
        user_id = _user_id(request)
        if not user_id:
            app.state.local_store.delete(story_id)
            return {'ok': True}
        async with app.state.sessionmaker() as session:
            await RemoteStoryStore(session).delete_user_story(story_id, user_id)
            await session.commit()
        return {'ok': True}

    @app.delete('/api/stories')
    async def api_clear_stories(request: Request):
        user_id = _user_id(request)
        if not user_id:
            app.state.local_store.clear()
            return {'ok': True}
        async with app.state.sessionmaker() as session:
            await RemoteStoryStore(session).clear_user_stories(user_id)
            await session.commit()
        return {'ok': True}

    return app

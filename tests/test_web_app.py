from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fakes import FakeProvider, pending, succeeded
from storyteller.services import poller_runtime
from storyteller.services.dashscope_client import DashScopeError
from storyteller.services.poller import TaskRecord, TaskStatus
from storyteller.storage.local import LocalStoryStore
from storyteller.web import app as web_app


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(records=[pending(), succeeded('https://img.example.test/p.png')])


@pytest.fixture
def app(
    provider: FakeProvider,
    tmp_path: Path,
    sessionmaker: async_sessionmaker[AsyncSession],
) -> FastAPI:
    return web_app.create_app(
        dashscope=provider,
        sessionmaker=sessionmaker,
        local_store=LocalStoryStore(str(tmp_path / 'web-stories.json')),
    )


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url='http://test') as http:
        yield http


@pytest.mark.asyncio
async def test_create_app_registers_process_poller(app: FastAPI) -> None:
    assert poller_runtime.get_poller() is app.state.poller
    assert app.state.poller.max_attempts == 5


@pytest.mark.asyncio
async def test_generate_requires_prompt(client: httpx.AsyncClient) -> None:
    resp = await client.post('/api/generate', json={'prompt': '  '})

    assert resp.status_code == 400
    assert resp.json() == {'error': 'missing_prompt'}


@pytest.mark.asyncio
async def test_generate_returns_story(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    resp = await client.post('/api/generate', json={'prompt': 'penguins'})

    assert resp.status_code == 200
    assert resp.json() == {'story': provider.text}


@pytest.mark.asyncio
async def test_generate_maps_upstream_failure(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.text_error = DashScopeError('boom', 500)

    resp = await client.post('/api/generate', json={'prompt': 'penguins'})

    assert resp.status_code == 502
    assert resp.json() == {'error': 'story_failed'}


@pytest.mark.asyncio
async def test_generate_stream_returns_text_chunks(client: httpx.AsyncClient) -> None:
    resp = await client.post('/api/generate/stream', json={'prompt': 'penguins'})

    assert resp.status_code == 200
    assert resp.headers['content-type'].startswith('text/plain')
    assert resp.text == 'Once upon a time.'


@pytest.mark.asyncio
async def test_image_returns_url_when_ready(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    resp = await client.post('/api/image', json={'prompt': 'penguins', 'story': 'text'})

    assert resp.status_code == 200
    assert resp.json() == {'imageUrl': 'https://img.example.test/p.png'}
    assert provider.fetch_calls == 2


@pytest.mark.asyncio
async def test_image_reports_failure(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.records = [TaskRecord(status=TaskStatus.FAILED)]

    resp = await client.post('/api/image', json={'prompt': 'penguins'})

    assert resp.status_code == 502
    assert resp.json() == {'error': 'image_failed', 'reason': 'Failed'}


@pytest.mark.asyncio
async def test_image_reports_timeout(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.records = [pending()]

    resp = await client.post('/api/image', json={'prompt': 'penguins'})

    assert resp.status_code == 504
    assert provider.fetch_calls == 5


@pytest.mark.asyncio
async def test_image_task_submit_and_wait(client: httpx.AsyncClient) -> None:
    created = await client.post('/api/image/tasks', json={'prompt': 'penguins'})
    assert created.json() == {'taskId': 'task-1', 'status': 'PENDING'}

    resp = await client.get('/api/image/tasks/task-1')

    assert resp.json() == {'taskId': 'task-1', 'kind': 'ready', 'artifactUrl': 'https://img.example.test/p.png'}


@pytest.mark.asyncio
async def test_image_task_submit_failure(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.submit_error = DashScopeError('quota', 429)

    resp = await client.post('/api/image/tasks', json={'prompt': 'penguins'})

    assert resp.status_code == 502
    assert resp.json() == {'error': 'image_submit_failed'}


@pytest.mark.asyncio
async def test_anonymous_stories_use_local_store(client: httpx.AsyncClient) -> None:
    created = await client.post('/api/stories', json={'theme': 'penguins'})
    body = created.json()

    assert created.status_code == 200
    assert body['image'] == {'kind': 'ready', 'artifactUrl': 'https://img.example.test/p.png'}
    assert body['notice'] is None
    assert body['story']['imageUrl'] == 'https://img.example.test/p.png'

    listed = await client.get('/api/stories')
    assert [story['id'] for story in listed.json()['stories']] == [body['story']['id']]

    await client.delete(f"/api/stories/{body['story']['id']}")
    assert (await client.get('/api/stories')).json() == {'stories': []}


@pytest.mark.asyncio
async def test_signed_in_stories_use_remote_store(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.records = [TaskRecord(status=TaskStatus.FAILED)]
    headers = {'X-User-Id': 'user-1'}

    created = await client.post('/api/stories', json={'theme': 'dragons', 'content': 'Dragon Day\nRoar.'}, headers=headers)
    body = created.json()

    assert body['notice'] == 'Story generated! Image generation failed, but story was saved.'
    assert 'imageUrl' not in body['story']

    remote = (await client.get('/api/stories', headers=headers)).json()['stories']
    assert [story['title'] for story in remote] == ['Dragon Day']
    assert (await client.get('/api/stories', headers={'X-User-Id': 'user-2'})).json() == {'stories': []}

    await client.delete('/api/stories', headers=headers)
    assert (await client.get('/api/stories', headers=headers)).json() == {'stories': []}


@pytest.mark.asyncio
@pytest.mark.parametrize('query', ['', '?url=ftp://files.example.test/a.png', '?url=javascript:alert(1)'])
async def test_download_rejects_bad_urls(client: httpx.AsyncClient, query: str) -> None:
    resp = await client.get(f'/api/download-image{query}')

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_download_proxies_image_with_filename(
    client: httpx.AsyncClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == 'https://img.example.test/p.png'
        return httpx.Response(200, content=b'\x89PNG', headers={'content-type': 'image/png'})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        web_app.httpx,
        'AsyncClient',
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    resp = await client.get(
        '/api/download-image',
        params={'url': 'https://img.example.test/p.png', 'title': '# The Brave Penguin'},
    )

    assert resp.status_code == 200
    assert resp.content == b'\x89PNG'
    assert resp.headers['content-disposition'] == 'attachment; filename="The-Brave-Penguin.png"'
    assert resp.headers['cache-control'] == 'no-store'


@pytest.mark.asyncio
async def test_download_reports_upstream_failure(
    client: httpx.AsyncClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        web_app.httpx,
        'AsyncClient',
        lambda **kwargs: real_client(transport=httpx.MockTransport(lambda request: httpx.Response(404)), **kwargs),
    )

    resp = await client.get('/api/download-image', params={'url': 'https://img.example.test/missing.png'})

    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_download_encodes_non_ascii_title(
    client: httpx.AsyncClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        web_app.httpx,
        'AsyncClient',
        lambda **kwargs: real_client(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, content=b'\x89PNG', headers={'content-type': 'image/png'})
            ),
            **kwargs,
        ),
    )

    resp = await client.get(
        '/api/download-image',
        params={'url': 'https://img.example.test/p.png', 'title': '勇敢的小企鹅'},
    )

    assert resp.status_code == 200
    assert resp.headers['content-disposition'] == (
        'attachment; filename="story-image.png"; '
        "filename*=UTF-8''%E5%8B%87%E6%95%A2%E7%9A%84%E5%B0%8F%E4%BC%81%E9%B9%85.png"
    )


@pytest.mark.asyncio
async def test_attach_image_to_saved_anonymous_story(client: httpx.AsyncClient, provider: FakeProvider) -> None:
    provider.records = [pending()]
    created = (await client.post('/api/stories', json={'theme': 'penguins'})).json()
    story_id = created['story']['id']
    assert created['image'] == {'kind': 'timed_out'}

    resp = await client.put(f'/api/stories/{story_id}/image', json={'imageUrl': 'https://img.example.test/late.png'})

    assert resp.status_code == 200
    assert resp.json()['story']['imageUrl'] == 'https://img.example.test/late.png'
    [listed] = (await client.get('/api/stories')).json()['stories']
    assert listed['imageUrl'] == 'https://img.example.test/late.png'


@pytest.mark.asyncio
async def test_attach_image_to_signed_in_story_is_owner_scoped(
    client: httpx.AsyncClient,
    provider: FakeProvider,
) -> None:
    provider.records = [pending()]
    owner = {'X-User-Id': 'user-1'}
    created = (await client.post('/api/stories', json={'theme': 'dragons'}, headers=owner)).json()
    story_id = created['story']['id']
    path = f'/api/stories/{story_id}/image'

    stranger = await client.put(path, json={'imageUrl': 'https://img.example.test/x.png'}, headers={'X-User-Id': 'user-2'})
    assert stranger.status_code == 404
    assert stranger.json() == {'error': 'story_not_found'}

    resp = await client.put(path, json={'imageUrl': 'https://img.example.test/d.png'}, headers=owner)
    assert resp.status_code == 200

    [remote] = (await client.get('/api/stories', headers=owner)).json()['stories']
    assert remote['imageUrl'] == 'https://img.example.test/d.png'
    [local] = (await client.get('/api/stories')).json()['stories']
    assert local['imageUrl'] == 'https://img.example.test/d.png'


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ('story_id', 'image_url', 'status_code'),
    [
        ('missing', 'https://img.example.test/d.png', 404),
        ('missing', 'javascript:alert(1)', 400),
    ],
)
async def test_attach_image_rejects_bad_requests(
    client: httpx.AsyncClient,
    story_id: str,
    image_url: str,
    status_code: int,
) -> None:
    resp = await client.put(f'/api/stories/{story_id}/image', json={'imageUrl': image_url})

    assert resp.status_code == status_code


@pytest.mark.asyncio
async def test_shutdown_releases_process_poller(app: FastAPI, provider: FakeProvider) -> None:
    poller = app.state.poller

    await app.router.shutdown()

    assert poller_runtime.get_poller() is None
    assert len(poller) == 0
    assert provider.closed is False


def test_poller_handle_is_empty_until_an_app_registers() -> None:
    assert poller_runtime.get_poller() is None

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from storyteller.config import get_settings
from storyteller.services.poller import TaskRecord, TaskStatus, TransientFetchError
from storyteller.utils.logging import get_logger


logger = get_logger('dashscope')


class DashScopeError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DashScopeClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.base_url = settings.dashscope_base_url.rstrip('/')
        self.compat_base_url = settings.dashscope_compat_base_url.rstrip('/')
        self.api_key = api_key if api_key is not None else settings.dashscope_api_key
        self._client = client or httpx.AsyncClient(timeout=settings.dashscope_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, *, async_task: bool = False) -> Dict[str, str]:
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }
        if async_task:
            headers['X-DashScope-Async'] = 'enable'
        return headers

    async def submit_image_task(
        self,
        prompt: str,
        *,
        size: str | None = None,
        n: int | None = None,
    ) -> Dict[str, Any]:
        url = f'{self.base_url}/services/aigc/text2image/image-synthesis'
        body = {
            'model': self.settings.image_model,
            'input': {'prompt': prompt},
            'parameters': {
                'size': size or self.settings.image_size,
                'n': n or self.settings.image_count,
                'prompt_extend': self.settings.image_prompt_extend,
                'watermark': self.settings.image_watermark,
            },
        }
        try:
            resp = await self._client.post(url, headers=self._headers(async_task=True), json=body)
        except httpx.HTTPError as exc:
            raise DashScopeError(f'DashScope image submit failed: {exc}') from exc
        if resp.status_code >= 400:
            raise DashScopeError(f'DashScope image submit error {resp.status_code}: {resp.text}', resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise DashScopeError(f'DashScope image submit returned invalid JSON: {exc}', resp.status_code) from exc
        if not isinstance(data, dict):
            raise DashScopeError(f'DashScope image submit returned {type(data).__name__}, expected an object', resp.status_code)
        return data

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        url = f'{self.base_url}/tasks/{task_id}'
        resp = await self._client.get(url, headers=self._headers())
        if resp.status_code >= 400:
            raise DashScopeError(f'DashScope task error {resp.status_code}: {resp.text}', resp.status_code)
        return resp.json()

    async def fetch_task_status(self, task_id: str) -> TaskRecord:
        try:
            record = await self.get_task(task_id)
        except DashScopeError as exc:
            raise TransientFetchError(str(exc), exc.status_code) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientFetchError(f'DashScope task fetch failed: {exc}') from exc
        if not isinstance(record, dict):
            raise TransientFetchError(f'DashScope task {task_id} returned {type(record).__name__}, expected an object')

        status = TaskStatus.parse(self.get_status(record))
        urls = self.parse_result_urls(record) if status is TaskStatus.SUCCEEDED else []
        if status is TaskStatus.FAILED:
            code, msg = self.get_fail_info(record)
            logger.info('task_failed_upstream', task_id=task_id, code=code, msg=msg)
        return TaskRecord(status=status, artifact_url=urls[0] if urls else None, raw=record)

    @staticmethod
    def extract_task_id(record: Dict[str, Any]) -> str:
        output = record.get('output') if isinstance(record.get('output'), dict) else {}
        candidates = [
            output.get('task_id'),
            output.get('taskId'),
            record.get('task_id'),
            record.get('taskId'),
        ]
        for candidate in candidates:
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    @staticmethod
    def get_status(record: Dict[str, Any]) -> str:
        output = record.get('output') if isinstance(record.get('output'), dict) else {}
        return str(
            output.get('task_status')
            or output.get('status')
            or record.get('task_status')
            or record.get('status')
            or ''
        )

    @staticmethod
    def parse_result_urls(record: Dict[str, Any]) -> List[str]:
        output = record.get('output') if isinstance(record.get('output'), dict) else {}
        urls: List[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                cleaned = value.strip()
                if cleaned:
                    urls.append(cleaned)

        results = output.get('results')
        if isinstance(results, list):
            for item in results:
                if isinstance(item, dict):
                    extend_from(item.get('url'))
                else:
                    extend_from(item)

        # Synchronous multimodal responses: output.choices[0].message.content[*].image
        choices = output.get('choices')
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get('message') or {}
            content = message.get('content') if isinstance(message, dict) else None
            if isinstance(content, list):
                for part in content:
                    if isinstance(part, dict):
                        extend_from(part.get('image'))

        return list(dict.fromkeys(urls))

    @staticmethod
    def get_fail_info(record: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
        output = record.get('output') if isinstance(record.get('output'), dict) else {}
        fail_code = output.get('code') or record.get('code')
        fail_msg = output.get('message') or record.get('message')
        return (str(fail_code) if fail_code else None), (str(fail_msg) if fail_msg else None)

    def _completion_payload(self, system_prompt: str, user_prompt: str, *, stream: bool) -> Dict[str, Any]:
        return {
            'model': self.settings.story_model,
            'stream': stream,
            'temperature': max(0.0, min(2.0, float(self.settings.story_temperature))),
            'max_tokens': max(1, int(self.settings.story_max_tokens)),
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
        }

    async def complete_story(self, system_prompt: str, user_prompt: str) -> str:
        url = f'{self.compat_base_url}/chat/completions'
        payload = self._completion_payload(system_prompt, user_prompt, stream=False)
        try:
            resp = await self._client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise DashScopeError(f'DashScope completion failed: {exc}') from exc
        if resp.status_code >= 400:
            raise DashScopeError(f'DashScope completion error {resp.status_code}: {resp.text}', resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        choices = data.get('choices') if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise DashScopeError('DashScope completion returned no choices')
        message = choices[0].get('message') if isinstance(choices[0], dict) else {}
        content = message.get('content') if isinstance(message, dict) else ''
        text = str(content or '').strip()
        if not text:
            raise DashScopeError('DashScope completion returned empty text')
        return text

    async def stream_story(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        url = f'{self.compat_base_url}/chat/completions'
        payload = self._completion_payload(system_prompt, user_prompt, stream=True)
        try:
            async with self._client.stream('POST', url, headers=self._headers(), json=payload) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise DashScopeError(
                        f'DashScope stream error {resp.status_code}: {body.decode("utf-8", "replace")}',
                        resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    delta = self.parse_stream_line(line)
                    if delta is None:
                        break
                    if delta:
                        yield delta
        except httpx.HTTPError as exc:
            raise DashScopeError(f'DashScope stream failed: {exc}') from exc

    @staticmethod
    def parse_stream_line(line: str) -> Optional[str]:
        """Return the text delta of one SSE line, '' for no text, None at [DONE]."""
        line = line.strip()
        if not line.startswith('data:'):
            return ''
        data = line[len('data:'):].strip()
        if data == '[DONE]':
            return None
        try:
            chunk = json.loads(data)
        except ValueError as exc:
            logger.warning('stream_chunk_unparsed', error=str(exc))
            return ''
        choices = chunk.get('choices') if isinstance(chunk, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ''
        delta = choices[0].get('delta') or {}
        return str(delta.get('content') or '') if isinstance(delta, dict) else ''

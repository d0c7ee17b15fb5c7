from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Protocol

from storyteller.services.poller import TaskRecord


class StoryProvider(Protocol):
    async def submit_image_task(self, prompt: str, *, size: str | None = None, n: int | None = None) -> Dict[str, Any]:
        ...

    async def fetch_task_status(self, task_id: str) -> TaskRecord:
        ...

    def extract_task_id(self, record: Dict[str, Any]) -> str:
        ...

    def get_status(self, record: Dict[str, Any]) -> str:
        ...

    async def complete_story(self, system_prompt: str, user_prompt: str) -> str:
        ...

    def stream_story(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        ...

from __future__ import annotations

import json
import os
from typing import List, Optional

from pydantic import ValidationError

from storyteller.schemas import Story
from storyteller.utils.logging import get_logger


logger = get_logger('local_store')


class LocalStoryStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def list(self) -> List[Story]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                rows = json.load(f)
            return [Story.model_validate(row) for row in rows]
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.warning('local_store_load_failed', path=self.path, error=str(exc))
            return []

    def get(self, story_id: str) -> Optional[Story]:
        for story in self.list():
            if story.id == story_id:
                return story
        return None

    def _write(self, stories: List[Story]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f'{self.path}.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump([story.to_json() for story in stories], f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def save(self, story: Story) -> None:
        try:
            self._write([story, *self.list()])
        except OSError as exc:
            logger.warning('local_store_save_failed', story_id=story.id, error=str(exc))

    def delete(self, story_id: str) -> None:
        try:
            self._write([story for story in self.list() if story.id != story_id])
        except OSError as exc:
            logger.warning('local_store_delete_failed', story_id=story_id, error=str(exc))

    def update(self, updated: Story) -> None:
        try:
            self._write([updated if story.id == updated.id else story for story in self.list()])
        except OSError as exc:
            logger.warning('local_store_update_failed', story_id=updated.id, error=str(exc))

    def clear(self) -> None:
        try:
            self._write([])
        except OSError as exc:
            logger.warning('local_store_clear_failed', error=str(exc))

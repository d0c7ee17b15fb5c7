from __future__ import annotations

import re
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    # DashScope
    dashscope_api_key: str = Field('', alias='DASHSCOPE_API_KEY')
    dashscope_base_url: str = Field('https://dashscope.aliyuncs.com/api/v1', alias='DASHSCOPE_BASE_URL')
    dashscope_compat_base_url: str = Field(
        'https://dashscope.aliyuncs.com/compatible-mode/v1',
        alias='DASHSCOPE_COMPAT_BASE_URL',
    )
    dashscope_timeout_seconds: float = Field(60.0, alias='DASHSCOPE_TIMEOUT_SECONDS')

    # Story text
    story_model: str = Field('qwen-plus', alias='STORY_MODEL')
    story_max_tokens: int = Field(800, alias='STORY_MAX_TOKENS')
    story_temperature: float = Field(0.7, alias='STORY_TEMPERATURE')
    max_theme_length: int = Field(2000, alias='MAX_THEME_LENGTH')

    # Illustration
    image_model: str = Field('qwen-image', alias='IMAGE_MODEL')
    image_size: str = Field('1328*1328', alias='IMAGE_SIZE')
    image_count: int = Field(1, alias='IMAGE_COUNT')
    image_prompt_extend: bool = Field(True, alias='IMAGE_PROMPT_EXTEND')
    image_watermark: bool = Field(True, alias='IMAGE_WATERMARK')

    # Polling
    image_poll_max_attempts: int = Field(90, alias='IMAGE_POLL_MAX_ATTEMPTS')
    image_poll_interval_ms: int = Field(2000, alias='IMAGE_POLL_INTERVAL_MS')

    # Database (account-backed stories)
    database_url: str = Field('sqlite+aiosqlite:///./storyteller.db', alias='DATABASE_URL')
    database_auto_create: bool = Field(False, alias='DATABASE_AUTO_CREATE')

    # Stores
    local_store_path: str = Field('./data/stories.json', alias='LOCAL_STORE_PATH')
    remote_list_limit: int = Field(100, alias='REMOTE_LIST_LIMIT')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(3000, alias='WEB_PORT')
    site_url: str = Field('', alias='SITE_URL')
    download_timeout_seconds: float = Field(30.0, alias='DOWNLOAD_TIMEOUT_SECONDS')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')
    log_format: str = Field('json', alias='LOG_FORMAT')

    def get_site_url(self) -> str:
        url = self.site_url.strip() or f'http://localhost:{self.web_port}'
        if not re.match(r'^https?://', url, re.IGNORECASE):
            url = f'https://{url}'
        return url.rstrip('/')


@lru_cache

def get_settings() -> Settings:
    return Settings()

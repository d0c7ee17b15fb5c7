from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

TITLE_MAX_LENGTH = 50

_LEADING_MARKERS = re.compile(r'^[#\s*_>\-]+')
_NEWLINES = re.compile(r'[\r\n]+')
_ILLEGAL_PATH_CHARS = re.compile(r'[\\/<>:"|?*]+')
# \w covers unicode letters and digits (and "_", which is allowed anyway).
_NOT_FILENAME_SAFE = re.compile(r'[^\w\s.\-]+')
_WHITESPACE = re.compile(r'\s+')
_EDGE_DOTS_DASHES = re.compile(r'^[.\-]+|[.\-]+$')


def clamp_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + '...'


def derive_title(content: Optional[str], fallback: Optional[str] = None) -> str:
    first_line = (content or '').split('\n')[0][:TITLE_MAX_LENGTH]
    return first_line or fallback or 'Story'


def make_download_filename(
    raw: Optional[str],
    fallback_prefix: str,
    ext: str,
    now: Optional[datetime] = None,
) -> str:
    name = str(raw or '')
    name = _LEADING_MARKERS.sub('', name, count=1)
    name = _NEWLINES.sub(' ', name)
    name = _ILLEGAL_PATH_CHARS.sub(' ', name)
    name = _NOT_FILENAME_SAFE.sub('', name)
    name = _WHITESPACE.sub(' ', name).strip()
    name = name.replace(' ', '-')
    name = _EDGE_DOTS_DASHES.sub('', name)

    if not name:
        stamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')
        name = f'{fallback_prefix}-{stamp}'

    dot = '' if ext.startswith('.') else '.'
    return f'{name}{dot}{ext}'

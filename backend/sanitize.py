import html
import re

import config

_TAG_RE = re.compile(r'<[^>]+>')
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_CODE_RE = re.compile(r'[^a-zA-Z0-9_-]')


def sanitize_text(text: str, max_length: int) -> str:
    """Strip HTML tags and control characters, then escape stray markup.

    The escaped result never exceeds ``max_length`` and never ends in a
    partial entity.
    """
    text = text[:max_length * 4]
    text = _TAG_RE.sub('', text)
    text = _CONTROL_RE.sub('', text)
    pieces = []
    length = 0
    for ch in text.strip():
        piece = html.escape(ch, quote=False)
        if length + len(piece) > max_length:
            break
        pieces.append(piece)
        length += len(piece)
    return ''.join(pieces).rstrip()


def sanitize_code(text: str, max_length: int) -> str:
    return _CODE_RE.sub('', text[:max_length * 4])[:max_length]


def sanitize_room_code(text: str) -> str:
    return sanitize_code(text, config.MAX_ROOM_CODE_LENGTH)


def sanitize_identifier(text: str) -> str:
    return sanitize_code(text, config.MAX_ID_LENGTH)


def sanitize_key(text: str) -> str:
    return sanitize_code(text, config.MAX_KEY_LENGTH)


def sanitize_name(text: str) -> str:
    return sanitize_text(text, config.MAX_NAME_LENGTH)


def sanitize_title(text: str, owner_name: str) -> str:
    title = sanitize_text(text, config.MAX_TITLE_LENGTH)
    if not title:
        title = f"{owner_name}'s book"[:config.MAX_TITLE_LENGTH]
    return title


def sanitize_page_text(text: str) -> str:
    value = sanitize_text(text, config.MAX_PAGE_TEXT_LENGTH)
    return value or config.EMPTY_PAGE_TEXT

from __future__ import annotations

import re
from typing import Any


_RU_LETTERS = "АБВГДЕЁЖЗИЙКЛМНОПРСТУФХЦЧШЩЪЫЬЭЮЯабвгдеёжзийклмнопрстуфхцчшщъыьэюя"
_KK_LETTERS = "ӘәҒғҚқҢңӨөҰұҮүҺһІі"
_ALPHABET = set(_RU_LETTERS + _KK_LETTERS)

# Codecs the portal has been seen to mis-decode UTF-8 Cyrillic with.
_MISDECODED_AS = ("cp1251", "cp1252")

_WHITESPACE_RUN = re.compile(r"\s+")


def _build_mojibake_table() -> tuple[dict[str, str], set[str]]:
    table: dict[str, str] = {}
    unambiguous: set[str] = set()
    for letter in _RU_LETTERS + _KK_LETTERS:
        raw = letter.encode("utf-8")
        for codec in _MISDECODED_AS:
            try:
                garbled = raw.decode(codec)
            except UnicodeDecodeError:
                continue
            if garbled == letter or garbled in table:
                continue
            table[garbled] = letter
            # "Рё" could be genuine text; "Р°" or "Ð°" cannot.
            if not all(ch in _ALPHABET for ch in garbled):
                unambiguous.add(garbled)
    return table, unambiguous


_MOJIBAKE, _MOJIBAKE_MARKERS = _build_mojibake_table()
_MOJIBAKE_PATTERN = re.compile("|".join(re.escape(k) for k in sorted(_MOJIBAKE, key=len, reverse=True)))


def looks_misdecoded(text: str) -> bool:
    if not text:
        return False
    return any(marker in text for marker in _MOJIBAKE_MARKERS)


def repair_encoding(text: str) -> str:
    """
    Undo the portal's known mis-decoding of UTF-8 Cyrillic.

    This is a static substitution table, not a decoder: sequences the table does not cover are
    left as they are, and text without an unambiguous marker is returned untouched.
    """
    if not isinstance(text, str) or not looks_misdecoded(text):
        return text
    return _MOJIBAKE_PATTERN.sub(lambda m: _MOJIBAKE[m.group(0)], text)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text).strip()


def normalize_text(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    return collapse_whitespace(repair_encoding(text))


def truncate_text(text: str, max_length: int, *, ellipsis: str = "...") -> str:
    if len(text) <= max_length:
        return text
    cut = max(0, max_length - len(ellipsis))
    return text[:cut].rstrip() + ellipsis

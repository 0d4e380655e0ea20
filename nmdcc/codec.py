from __future__ import annotations

# Replacement order matters: escaping "&" first keeps the later entity
# text from being escaped again, and unescaping undoes it last.
_ESCAPES = (("&", "&amp;"), ("|", "&#124;"), ("$", "&#36;"))


def escape(text: str) -> str:
    s = str(text)
    if not s:
        return " "
    for raw, entity in _ESCAPES:
        s = s.replace(raw, entity)
    return s


def unescape(text: str) -> str:
    s = str(text)
    for raw, entity in reversed(_ESCAPES):
        s = s.replace(entity, raw)
    return s

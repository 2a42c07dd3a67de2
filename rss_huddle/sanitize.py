"""Best-effort repair of malformed feed XML.

The repair is a regex pre-pass, not an XML parser: it fixes the handful of
mistakes commonly found in hand-rolled feeds (unquoted or valueless
attributes, bare ampersands, HTML-only named entities) and leaves everything
else untouched.
"""

from __future__ import annotations

import re

_NAMED_ENTITIES = {
    "&ldquo;": '"',
    "&rdquo;": '"',
    "&lsquo;": "'",
    "&rsquo;": "'",
    "&mdash;": "-",
    "&ndash;": "-",
    "&nbsp;": " ",
}

_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")
_NUMERIC_REFERENCE = re.compile(r"&#(\d+);")
_TAG = re.compile(r"""<([A-Za-z][\w:.\-]*)((?:"[^"<]*"|'[^'<]*'|[^<>"'])*?)(/?)>""")
_ATTRIBUTE = re.compile(
    r"""(\s+)([^\s=/>"']+)(?:\s*=\s*("[^"]*"|'[^']*'|[^\s"'>]+))?"""
)


def _quote_attribute(match: re.Match) -> str:
    space, name, value = match.group(1), match.group(2), match.group(3)
    if value is None:
        return f'{space}{name}=""'
    if value[0] in "\"'":
        return f"{space}{name}={value}"
    return f'{space}{name}="{value}"'


def _repair_tag(match: re.Match) -> str:
    name, attributes, self_closing = match.group(1), match.group(2), match.group(3)
    return f"<{name}{_ATTRIBUTE.sub(_quote_attribute, attributes)}{self_closing}>"


def sanitize_xml(xml_text: str) -> str:
    """Return ``xml_text`` with common well-formedness errors repaired."""
    if not xml_text:
        return ""

    text = _TAG.sub(_repair_tag, xml_text)
    for entity, replacement in _NAMED_ENTITIES.items():
        text = text.replace(entity, replacement)
    return _BARE_AMPERSAND.sub("&amp;", text)


def decode_numeric_entities(value: str) -> str:
    """Decode decimal character references such as ``&#8217;``."""
    if not value:
        return ""

    def _replace(match: re.Match) -> str:
        try:
            return chr(int(match.group(1)))
        except (ValueError, OverflowError):
            return match.group(0)

    return _NUMERIC_REFERENCE.sub(_replace, value)

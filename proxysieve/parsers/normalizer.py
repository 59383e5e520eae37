"""
Repair pipeline for raw connection URIs.

Subscription feeds are full of links that were pasted through chat
clients, HTML pages and double URL encoders. normalize_uri() runs a
fixed sequence of passes that turns such text back into something
urllib can split. Pass order matters: each pass assumes the previous
ones already ran. The result is stable under re-normalization.
"""

import html
import re
from urllib.parse import quote, unquote

from proxysieve.core.errors import EmptyInputError, MalformedSchemeError

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_CONTROL_ESCAPE = re.compile(r"%(?:[01][0-9a-fA-F]|7[fF])")


def strip_spaces_before_remark(uri: str) -> str:
    """Remove spaces from everything before the first '#'."""
    head, sep, remark = uri.partition("#")
    return head.replace(" ", "") + sep + remark


def clean_malformed_percent_encoding(uri: str) -> str:
    """Drop every '%' that does not start a two-hex-digit escape."""
    out = []
    i = 0
    n = len(uri)
    while i < n:
        ch = uri[i]
        if ch == "%":
            if i + 2 < n and uri[i + 1] in _HEX_DIGITS and uri[i + 2] in _HEX_DIGITS:
                out.append(uri[i:i + 3])
                i += 3
                continue
            i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def remove_percent_encoded_control_characters(uri: str) -> str:
    return _CONTROL_ESCAPE.sub("", uri)


def escape_ampersands(uri: str) -> str:
    """Turn every bare '&' into '&amp;' so html.unescape keeps it."""
    out = []
    for i, ch in enumerate(uri):
        if ch == "&" and not uri.startswith("amp;", i + 1):
            out.append("&amp;")
        else:
            out.append(ch)
    return "".join(out)


def decode_percent_layers(uri: str) -> str:
    """Clean and percent-decode until no escape is left to decode.

    A single decode leaves '%2541' as '%41', which the next call would
    decode again. Every round that changes the string also shortens it.
    """
    while True:
        decoded = unquote(remove_percent_encoded_control_characters(clean_malformed_percent_encoding(uri)))
        if decoded == uri:
            return uri
        uri = decoded


def decode_ampersand_entities(uri: str) -> str:
    """Unescape '&amp;' layers while leaving other entity names alone."""
    while True:
        # '&note=' would otherwise be unescaped to '¬e='
        decoded = html.unescape(escape_ampersands(uri))
        if decoded == uri:
            return uri
        uri = decoded


def _authority_end(rest: str) -> int:
    q = rest.find("?")
    if q != -1:
        return q
    h = rest.find("#")
    return h if h != -1 else len(rest)


def escape_user_info(uri: str) -> str:
    """Percent-encode the credentials between 'scheme://' and the last '@'."""
    scheme, sep, rest = uri.partition("://")
    if not sep:
        raise MalformedSchemeError()
    end = _authority_end(rest)
    authority = rest[:end]
    at = authority.rfind("@")
    if at == -1:
        return uri
    user = quote(authority[:at], safe="")
    return scheme + "://" + user + authority[at:] + rest[end:]


def escape_decoded_spaces(uri: str) -> str:
    """Re-encode spaces that percent-decoding put back before the remark."""
    head, sep, remark = uri.partition("#")
    return head.replace(" ", "%20") + sep + remark


def normalize_uri(raw: str) -> str:
    """Repair a raw connection URI.

    Raises EmptyInputError for blank input and MalformedSchemeError
    when no 'scheme://' separator survives the repairs.
    """
    uri = raw.strip()
    if not uri:
        raise EmptyInputError()

    uri = strip_spaces_before_remark(uri)
    uri = decode_percent_layers(uri)
    uri = clean_malformed_percent_encoding(uri)
    uri = decode_ampersand_entities(uri)
    uri = escape_user_info(uri)
    return escape_decoded_spaces(uri)

"""
Flat key/value documents.

Flow documents are stored as `key = value` lines:

    # comment
    flow.batch1.blockerIds =
    flow.batch1.main.0000.id = step1

Reading supports:
- Comment lines starting with '#' or '!'
- '=', ':' or whitespace as the key/value separator
- Backslash line continuation
- Escapes: \\t \\n \\r \\f \\\\ \\uXXXX (any other escaped char stands for itself)

Writing sorts keys and escapes what reading would otherwise misinterpret,
so that loads(dumps(mapping)) == mapping.

Also provides the prefix helpers the codec uses to slice a document.
"""

from pathlib import Path
from typing import Iterator, Mapping, Optional

from batchflow.errors import InvalidArgumentError

_SEPARATORS = "=:"
_WHITESPACE = " \t\f"
_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
# str.splitlines() also breaks on these
_LINE_BREAKS = "\x85\u2028\u2029"


def _logical_lines(text: str) -> Iterator[str]:
    """Yield logical lines, joining continuations and dropping comments."""
    pending: Optional[str] = None
    for raw in text.splitlines():
        line = raw.lstrip(_WHITESPACE)
        if pending is None:
            if not line or line[0] in "#!":
                continue
        else:
            line = pending + line
            pending = None
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending = line[:-1]
            continue
        yield line
    if pending is not None:
        yield pending


def _unescape(text: str) -> str:
    out = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c != "\\" or i + 1 >= n:
            out.append(c)
            i += 1
            continue
        nxt = text[i + 1]
        if nxt == "u":
            code = text[i + 2:i + 6]
            if len(code) != 4:
                raise InvalidArgumentError(f"malformed \\uXXXX escape: {text!r}")
            try:
                out.append(chr(int(code, 16)))
            except ValueError as e:
                raise InvalidArgumentError(f"malformed \\uXXXX escape: {text!r}") from e
            i += 6
            continue
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(out)


def _split(line: str) -> tuple[str, str]:
    """Split a logical line into raw (still escaped) key and value."""
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        if c == "\\":
            i += 2
            continue
        if c in _SEPARATORS or c in _WHITESPACE:
            break
        i += 1
    key = line[:i]
    j = i
    while j < n and line[j] in _WHITESPACE:
        j += 1
    if j < n and line[j] in _SEPARATORS:
        j += 1
        while j < n and line[j] in _WHITESPACE:
            j += 1
    return key, line[j:]


def loads(text: str) -> dict[str, str]:
    """
    Parse a flat key/value document.

    Later definitions of the same key replace earlier ones.

    Args:
        text: Document text

    Returns:
        Mapping of keys to values
    """
    if text is None:
        raise InvalidArgumentError("text must not be None")
    result: dict[str, str] = {}
    for line in _logical_lines(text):
        raw_key, raw_value = _split(line)
        result[_unescape(raw_key)] = _unescape(raw_value)
    return result


def _escape(text: str, is_key: bool) -> str:
    out = []
    for index, c in enumerate(text):
        if c == "\\":
            out.append("\\\\")
        elif c == "\t":
            out.append("\\t")
        elif c == "\n":
            out.append("\\n")
        elif c == "\r":
            out.append("\\r")
        elif c == "\f":
            out.append("\\f")
        elif c == " " and (is_key or index == 0):
            out.append("\\ ")
        elif c in "=:" and is_key:
            out.append("\\" + c)
        elif c in "#!" and index == 0:
            out.append("\\" + c)
        elif ord(c) < 0x20 or ord(c) == 0x7F or c in _LINE_BREAKS:
            out.append(f"\\u{ord(c):04x}")
        else:
            out.append(c)
    return "".join(out)


def dumps(properties: Mapping[str, str], header: Optional[str] = None) -> str:
    """
    Render a mapping as a flat key/value document, sorted by key.

    Args:
        properties: Mapping of keys to values
        header: Optional comment written at the top (one '#' line per line)

    Returns:
        Document text ending with a newline
    """
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    lines = []
    if header:
        lines.extend(f"# {line}".rstrip() for line in header.splitlines())
    for key in sorted(properties):
        lines.append(f"{_escape(key, True)} = {_escape(properties[key], False)}")
    return "\n".join(lines) + "\n"


def read(path: Path | str) -> dict[str, str]:
    """Read a flat key/value document from a UTF-8 file."""
    return loads(Path(path).read_text(encoding="utf-8"))


def write(path: Path | str, properties: Mapping[str, str], header: Optional[str] = None) -> None:
    """Write a flat key/value document to a UTF-8 file."""
    Path(path).write_text(dumps(properties, header), encoding="utf-8")


def create_prefix_map(properties: Mapping[str, str], prefix: str) -> dict[str, str]:
    """
    Extract the entries whose key starts with prefix, with the prefix removed.

    The result is sorted by (stripped) key.

    Args:
        properties: Source mapping
        prefix: Key prefix, usually ending with '.'

    Returns:
        New mapping of stripped keys to values
    """
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    if prefix is None:
        raise InvalidArgumentError("prefix must not be None")
    start = len(prefix)
    return {
        key[start:]: properties[key]
        for key in sorted(properties)
        if key.startswith(prefix)
    }


def get_child_keys(properties: Mapping[str, str], prefix: str, delimiter: str) -> set[str]:
    """
    Collect the direct child keys under prefix.

    For prefix "flow." and delimiter ".", the key "flow.a.main.0000.id"
    contributes "flow.a".

    Args:
        properties: Source mapping
        prefix: Key prefix
        delimiter: Segment delimiter

    Returns:
        Set of child keys (each including the prefix)
    """
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    results = set()
    start = len(prefix)
    for key in properties:
        if not key.startswith(prefix):
            continue
        index = key.find(delimiter, start)
        results.add(key if index < 0 else key[:index])
    return results

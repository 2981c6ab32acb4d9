import os
import re
import shutil
from datetime import timedelta

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")

_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}

# Go reference-time tokens, longest first so "2006" wins over "06".
_GO_LAYOUT_TOKENS = [
    ("2006", "%Y"),
    ("January", "%B"),
    ("Monday", "%A"),
    ("Jan", "%b"),
    ("Mon", "%a"),
    ("MST", "%Z"),
    ("-0700", "%z"),
    (".000000", ".%f"),
    ("01", "%m"),
    ("02", "%d"),
    ("15", "%H"),
    ("03", "%I"),
    ("04", "%M"),
    ("05", "%S"),
    ("06", "%y"),
    ("PM", "%p"),
]


def parse_duration(value) -> timedelta:
    """
    Parses a timeout value into a timedelta.
    Accepts numbers (seconds), timedeltas, numeric strings and Go-style
    durations such as "30m", "1h30m" or "500ms".
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return timedelta(seconds=value)

    text = str(value).strip()
    if not text:
        raise ValueError("Duration must not be empty")
    try:
        return parse_duration(float(text))
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return timedelta(seconds=total)


def to_strftime(layout: str) -> str:
    """
    Converts a Go reference layout (e.g. "2006-01-02_15-04-05") to a strftime
    pattern. Patterns that already contain "%" are returned unchanged.
    """
    if "%" in layout:
        return layout
    out = []
    i = 0
    while i < len(layout):
        for token, directive in _GO_LAYOUT_TOKENS:
            if layout.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            out.append(layout[i])
            i += 1
    return "".join(out)


def path_size(path: str) -> int:
    """Size in bytes of a file, or the sum of all files under a directory."""
    if os.path.isdir(path):
        total = 0
        for root, _, files in os.walk(path):
            for name in files:
                total += os.path.getsize(os.path.join(root, name))
        return total
    return os.path.getsize(path)


def remove_path(path: str) -> None:
    """Removes a file or directory tree if it exists."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)

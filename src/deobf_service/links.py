import re

MAX_SCAN_BYTES = 1_000_000

# Stops at quotes, brackets, parentheses and whitespace, so URLs embedded in
# source code come out without the surrounding syntax.
_URL_RE = re.compile(r"https?://[a-zA-Z0-9\-._~:/?#@!$&'*+,;=%]+")
_TRAILING_RE = re.compile(r"[.,;:!?%]+$")


def scan(data: bytes | str, max_bytes: int = MAX_SCAN_BYTES) -> set[str]:
    if isinstance(data, bytes):
        text = data[:max_bytes].decode("utf-8", errors="replace")
    else:
        text = data[:max_bytes]

    links: set[str] = set()
    for match in _URL_RE.findall(text):
        url = _TRAILING_RE.sub("", match)
        if url.split("://", 1)[1]:
            links.add(url)
    return links


def format_links(links: set[str], limit: int = 1000) -> str:
    lines: list[str] = []
    used = 0
    ordered = sorted(links)
    for i, url in enumerate(ordered):
        if used + len(url) + 1 > limit:
            lines.append(f"... and {len(ordered) - i} more")
            break
        lines.append(url)
        used += len(url) + 1
    return "\n".join(lines)

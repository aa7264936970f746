"""
File name templates.

Tokens: ``{date}`` (YYYY-MM-DD), ``{time}`` (HHMM), ``{counter}`` (3 digits),
``{profile}``, ``{format}`` (upper case) and ``{dpi}`` (e.g. ``300dpi``).
Unknown tokens are kept as written. When a rendered name is taken the
counter moves up from its base until a free name is found.
"""

import logging
import re
from typing import AbstractSet, List, Optional, Tuple

from .models import NamingContext

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\{(\w+)\}")
COUNTER_WIDTH = 3
KNOWN_TOKENS = ("date", "time", "counter", "profile", "format", "dpi")

# Characters that would turn a value into a path.
_UNSAFE = re.compile(r"[\\/:\x00]")

# A dropped {time} takes one neighbouring separator with it.
_TIME_WITH_SEPARATOR = re.compile(r"[-_ .]\{time\}|^\{time\}[-_ .]?|\{time\}")


def _clean(value: str) -> str:
    return _UNSAFE.sub("-", value)


def render(
    template: str,
    context: NamingContext,
    counter: int,
    include_time: bool = True,
    append_page_count: bool = False,
    append_dpi: bool = False,
) -> str:
    """Substitute tokens; no extension, no collision handling."""
    if not include_time:
        template = _TIME_WITH_SEPARATOR.sub("", template)
    values = {
        "date": context.date.strftime("%Y-%m-%d"),
        "time": context.time.strftime("%H%M") if include_time else "",
        "counter": str(counter).zfill(COUNTER_WIDTH),
        "profile": _clean(context.profile),
        "format": context.format.value.upper(),
        "dpi": f"{context.dpi}dpi",
    }

    def substitute(match):
        return values.get(match.group(1), match.group(0))

    name = TOKEN_RE.sub(substitute, template)
    if append_page_count:
        name += f"-{context.page_count}p"
    if append_dpi:
        name += f"-{context.dpi}dpi"
    return name


def unknown_tokens(template: str) -> List[str]:
    return [t for t in TOKEN_RE.findall(template) if t not in KNOWN_TOKENS]


def _resolve(
    template: str,
    context: NamingContext,
    existing_names: AbstractSet[str],
    base: int,
    **options,
) -> Tuple[str, int]:
    ext = context.format.extension
    counter = max(1, base)

    if "{counter}" not in template:
        candidate = f"{render(template, context, counter, **options)}.{ext}"
        if candidate not in existing_names:
            return candidate, counter - 1
        template = template + "-{counter}"

    while True:
        candidate = f"{render(template, context, counter, **options)}.{ext}"
        if candidate not in existing_names:
            return candidate, counter
        counter += 1


def resolve_name(
    template: str,
    context: NamingContext,
    existing_names: AbstractSet[str] = frozenset(),
    base: Optional[int] = None,
    **options,
) -> str:
    """Render ``template`` into a file name not present in ``existing_names``.

    Args:
        template: Naming template, e.g. ``"{date}-{counter}"``.
        context: Values for the tokens.
        existing_names: Names already taken (with extensions).
        base: First counter value tried; defaults to ``context.counter``.
        **options: ``include_time``, ``append_page_count``, ``append_dpi``.

    Returns:
        The first free name, with the format's extension.
    """
    for token in unknown_tokens(template):
        logger.warning(f"Unknown naming token '{{{token}}}' left as-is")
    name, _ = _resolve(
        template, context, existing_names,
        context.counter if base is None else base,
        **options,
    )
    return name


def resolve_names(
    template: str,
    context: NamingContext,
    count: int,
    existing_names: AbstractSet[str] = frozenset(),
    base: Optional[int] = None,
    **options,
) -> List[str]:
    """Free names for ``count`` files, the counter increasing from file to file."""
    for token in unknown_tokens(template):
        logger.warning(f"Unknown naming token '{{{token}}}' left as-is")
    taken = set(existing_names)
    counter = context.counter if base is None else base
    names = []
    for _ in range(count):
        name, used = _resolve(template, context, taken, counter, **options)
        names.append(name)
        taken.add(name)
        counter = used + 1
    return names

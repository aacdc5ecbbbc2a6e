"""
Matching of inbound request paths against endpoint path templates.

A template is a path such as ``/repos/{owner}/{repo}``, optionally followed by
``?key=value`` defaults that are sent upstream unless the caller overrides them.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _segments(path: str) -> List[str]:
    return [s for s in path.split("/") if s]


def _is_placeholder(segment: str) -> bool:
    return len(segment) > 2 and segment.startswith("{") and segment.endswith("}")


def split_template(template: str) -> Tuple[str, Dict[str, str]]:
    """Separate a template into its path part and its query-string defaults."""
    path, _, query = template.partition("?")
    return path or "/", dict(parse_qsl(query, keep_blank_values=True))


def matches(template: str, request_path: str) -> bool:
    """
    True when every literal segment is equal and every ``{name}`` segment lines up
    with exactly one non-empty request segment. Segment counts must be equal.
    """
    template_segments = _segments(split_template(template)[0])
    path_segments = _segments(request_path)
    if len(template_segments) != len(path_segments):
        return False
    for tpl, seg in zip(template_segments, path_segments):
        if _is_placeholder(tpl):
            continue
        if tpl != seg:
            return False
    return True


def match(
    candidates: Iterable[Tuple[str, str, T]],
    request_method: str,
    request_path: str,
) -> Optional[T]:
    """
    Return the payload of the first ``(method, template, payload)`` candidate that
    matches, or None. Duplicate templates are rejected when a bridge is saved, so
    first-wins is only an ordering rule here.
    """
    method = request_method.upper()
    for cand_method, template, payload in candidates:
        if cand_method.upper() == method and matches(template, request_path):
            return payload
    return None


def resolve(template: str, request_path: str) -> str:
    """
    Substitute each ``{name}`` segment of the template with the request segment in
    the same position.

    On a segment-count mismatch the template path is returned unresolved; that is
    an endpoint-definition bug, not a client error.
    """
    template_path = split_template(template)[0]
    template_segments = _segments(template_path)
    path_segments = _segments(request_path)
    if len(template_segments) != len(path_segments):
        logger.warning(
            "Cannot resolve template %s against %s: segment counts differ", template_path, request_path
        )
        return template_path

    resolved = [
        seg if _is_placeholder(tpl) else tpl for tpl, seg in zip(template_segments, path_segments)
    ]
    return "/" + "/".join(resolved)


def merge_query(
    template: str,
    inbound: Sequence[Tuple[str, str]] | Mapping[str, str],
) -> Dict[str, str]:
    """Template query defaults overlaid by inbound query parameters, inbound winning."""
    merged = dict(split_template(template)[1])
    items = inbound.items() if isinstance(inbound, Mapping) else inbound
    for key, value in items:
        merged[key] = value
    return merged


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and a path with exactly one slash between them."""
    return base_url.rstrip("/") + "/" + path.lstrip("/")

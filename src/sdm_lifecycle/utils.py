from __future__ import annotations

import copy
import re
from collections import defaultdict, deque
from datetime import timedelta
from typing import Any, Mapping, Sequence


def slugify_name(name: str, *, max_length: int = 63) -> str:
    """Lower-case DNS-label style slug, as required for Kubernetes object names."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def validate_goal_dag(dependencies: Mapping[str, Sequence[str]]) -> list[str]:
    """Validate a goal dependency graph and return a topological order.

    Ties are broken by the mapping's iteration order, i.e. declaration order.

    Raises:
        ValueError: On a dependency to an unknown goal or a cycle.
    """
    order_index = {name: idx for idx, name in enumerate(dependencies)}
    indegree = {name: 0 for name in dependencies}
    edges: dict[str, list[str]] = defaultdict(list)

    for name, deps in dependencies.items():
        for dep in deps:
            if dep not in dependencies:
                raise ValueError(f"Goal '{name}' depends on unknown goal '{dep}'")
            indegree[name] += 1
            edges[dep].append(name)

    queue = deque(name for name in dependencies if indegree[name] == 0)
    ordered: list[str] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for nxt in sorted(edges[current], key=order_index.__getitem__):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(ordered) != len(dependencies):
        stuck = sorted(name for name, degree in indegree.items() if degree > 0)
        raise ValueError(f"Goal dependency graph contains a cycle through: {', '.join(stuck)}")
    return ordered


def deep_merge(base: Any, overlay: Any) -> Any:
    """Merge ``overlay`` into a copy of ``base``.

    Dicts merge key by key, lists merge element by element (extra overlay
    elements are appended), anything else is replaced by the overlay.
    """
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = copy.deepcopy(base)
        for key, value in overlay.items():
            merged[key] = deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    if isinstance(base, list) and isinstance(overlay, list):
        merged_list = copy.deepcopy(base)
        for idx, value in enumerate(overlay):
            if idx < len(merged_list):
                merged_list[idx] = deep_merge(merged_list[idx], value)
            else:
                merged_list.append(copy.deepcopy(value))
        return merged_list
    return copy.deepcopy(overlay)


def format_duration(duration: timedelta | float, *, minutes_only: bool = False) -> str:
    """Render a duration the way goal descriptions show it, e.g. ``1h 2m 3s`` or ``10m``."""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    seconds = max(0.0, seconds)
    if minutes_only:
        return f"{round(seconds / 60)}m"
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def code_line(text: str) -> str:
    """Inline code markup used in goal descriptions."""
    return f"`{text}`"

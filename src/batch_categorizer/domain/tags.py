from typing import Any


def parse_tag_list(raw_tags: str | None) -> list[str]:
    if not raw_tags:
        return []
    return _dedupe(raw_tags.replace(";", ",").split(","))


def normalize_tags(value: Any) -> list[str]:
    """Coerce a tag payload (list, set, comma string) into unique trimmed tags."""
    if not value:
        return []
    if isinstance(value, str):
        return parse_tag_list(value)
    if isinstance(value, (list, tuple)):
        return _dedupe(str(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return _dedupe(sorted(str(item) for item in value))
    return []


def _dedupe(parts: Any) -> list[str]:
    tags: list[str] = []
    seen: set[str] = set()
    for part in parts:
        tag = part.strip()
        if tag and tag.lower() not in seen:
            tags.append(tag)
            seen.add(tag.lower())
    return tags

"""Pure transform functions available to transform steps."""

from typing import Any, Dict, List

from ..core.exceptions import InvalidInputError


def _feeds(data: Any) -> List[Any]:
    if isinstance(data, dict):
        data = data.get("feeds")
    if not isinstance(data, list):
        raise InvalidInputError("Transform input must be a feeds list or an object with 'feeds'")
    return data


def select_valid_feeds(data: Any) -> Dict[str, Any]:
    """Keep one validated feed URL per source.

    Each source's first successful validation becomes ``rss_url`` and
    ``validation``; sources without a valid feed are dropped.
    """
    selected = []
    for feed in _feeds(data):
        if not isinstance(feed, dict):
            continue
        valid = next((v for v in feed.get("validations") or [] if v.get("ok")), None)
        if valid is None:
            continue
        entry = {key: value for key, value in feed.items() if key not in ("validations", "rss_urls")}
        entry["rss_url"] = valid.get("rss_url")
        entry["validation"] = {key: value for key, value in valid.items() if key != "rss_url"}
        selected.append(entry)
    return {"feeds": selected}


def flatten_feeds(data: Any) -> Dict[str, Any]:
    """Flatten nested feed lists and drop duplicate feed URLs, keeping first occurrence."""
    flattened: List[Dict[str, Any]] = []
    seen = set()

    def visit(items: List[Any]):
        for item in items:
            if isinstance(item, list):
                visit(item)
            elif isinstance(item, dict):
                key = item.get("rss_url") or item.get("url")
                if key and key in seen:
                    continue
                if key:
                    seen.add(key)
                flattened.append(item)

    visit(_feeds(data))
    return {"feeds": flattened}


DEFAULT_TRANSFORMS = {
    "select_valid_feeds": select_valid_feeds,
    "flatten_feeds": flatten_feeds,
}

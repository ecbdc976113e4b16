import json
import hashlib
import re

_UNSAFE = re.compile(r"[^a-z0-9._-]+")


def dict_to_hash(d: dict) -> str:
    """Generate a stable hash from a dictionary.

    Sorts keys to ensure consistent hashing regardless of dict ordering.
    """
    json_string = json.dumps(d, sort_keys=True).encode()
    return hashlib.sha256(json_string).hexdigest()


def safe_name(value: str) -> str:
    """Lowercase a name and collapse anything unsafe for a path segment."""
    cleaned = _UNSAFE.sub("-", value.strip().lower()).strip("-.")
    return cleaned or "unnamed"

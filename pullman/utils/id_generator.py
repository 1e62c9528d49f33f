"""Typed wrapper for ID generation."""

import secrets
import string

from coolname import generate_slug  # type: ignore[import-untyped]


def generate_id() -> str:
    """Generate a unique slug-style identifier with a random suffix.

    @return: A hyphenated slug string with a 10-letter random suffix
            (e.g., "purple-elephant-abcdefghij")
    """
    random_suffix = "".join(secrets.choice(string.ascii_lowercase) for _ in range(10))
    return generate_slug(2) + "-" + random_suffix


def generate_worker_id(prefix: str | None = None) -> str:
    """Generate a worker identifier, optionally namespaced by a prefix.

    @param prefix: A label for the worker pool (e.g., "billing")
    @return: A worker ID such as "billing/purple-elephant-a1b2c3"
    """
    random_suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    slug = generate_slug(2)

    if prefix:
        return f"{prefix}/{slug}-{random_suffix}"
    return f"{slug}-{random_suffix}"

from __future__ import annotations

import hashlib
import re

# Compute resource names: lowercase letters, digits and dashes, at most 63 chars.
MAX_RESOURCE_NAME = 63
STATE_DISK_SUFFIX = "-state"
MAX_INSTANCE_NAME = MAX_RESOURCE_NAME - len(STATE_DISK_SUFFIX)
SLUG_HASH_LENGTH = 6

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify_ref(ref: str) -> str:
    """Slug a git ref the way CI slug helpers do (``refs/heads/Feat/X`` -> ``feat-x``)."""
    value = ref.strip()
    for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    slug = _NON_SLUG.sub("-", value.lower()).strip("-")
    return slug[:MAX_RESOURCE_NAME].rstrip("-")


def short_commit(commit: str, length: int = 7) -> str:
    value = commit.strip().lower()
    if not re.fullmatch(r"[0-9a-f]{4,40}", value):
        raise ValueError(f"not a hex commit id: {commit!r}")
    return value[:length]


def instance_name(prefix: str, ref_slug: str, commit: str) -> str:
    base = f"{prefix}-{ref_slug}-{commit}"
    if len(base) <= MAX_INSTANCE_NAME:
        return base
    digest = hashlib.sha256(ref_slug.encode("utf-8")).hexdigest()[:SLUG_HASH_LENGTH]
    room = MAX_INSTANCE_NAME - len(prefix) - len(commit) - len(digest) - 3
    if room < 1:
        raise ValueError(
            f"prefix {prefix!r} and commit {commit!r} leave no room for the ref slug"
        )
    trimmed = ref_slug[:room].rstrip("-") or ref_slug[:1]
    return f"{prefix}-{trimmed}-{digest}-{commit}"


def state_disk_name(instance: str) -> str:
    return f"{instance}{STATE_DISK_SUFFIX}"


def snapshot_image_name(prefix: str, commit: str, network: str, format_tag: str) -> str:
    return f"{prefix}-{commit}-{network.lower()}-{format_tag}"


def image_reference(base: str, commit: str) -> str:
    return f"{base}:{commit}"

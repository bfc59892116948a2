"""Deterministic A/B variant assignment."""

import hashlib

EXPERIMENT_TTL = 7 * 24 * 3600       # 7 days


def assign_variant(user_id: str, experiment_name: str, variant_names: list[str]) -> str:
    """Pick a variant from ``md5(user_id + experiment_name)``.

    Stable for a given user, experiment and variant order, across processes
    and restarts.
    """
    if not variant_names:
        raise ValueError("an experiment needs at least one variant")
    digest = hashlib.md5(f"{user_id}{experiment_name}".encode("utf-8")).hexdigest()
    return variant_names[int(digest, 16) % len(variant_names)]


def experiment_key(experiment_name: str) -> str:
    return f"experiments:{experiment_name}"


def experiment_group(experiment_name: str, variant: str) -> str:
    return f"{experiment_name}:{variant}"

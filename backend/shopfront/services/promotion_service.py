# Overview: In-memory promotion registry owned by the Flask app.

"""
Promotion Registry

WHY: One keyword promotion is active at a time (e.g. 10% off dairy). Admins
can change it at runtime; it is deliberately not persisted and resets to the
configured default on restart.

CONCURRENCY: PromotionConfig is immutable. update() swaps the registry's
reference under a lock, so a checkout that took a snapshot() keeps pricing
with the config it read even if an admin updates mid-request.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from flask import current_app

from ..errors import ValidationError


@dataclass(frozen=True)
class PromotionConfig:
    keywords: tuple[str, ...]
    percent: int

    def matches(self, product_name: str | None) -> bool:
        name = (product_name or "").lower()
        return any(keyword in name for keyword in self.keywords)

    def to_dict(self) -> dict:
        return {"keywords": list(self.keywords), "percent": self.percent}


def build_config(keywords, percent) -> PromotionConfig:
    """
    Validate and normalize raw admin input.

    keywords: list of strings or a comma-separated string; lowercased,
    trimmed, de-duplicated in order. percent: integer 1-100.
    """
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    if not isinstance(keywords, (list, tuple)):
        raise ValidationError("keywords must be a list of strings")

    cleaned: list[str] = []
    for raw in keywords:
        keyword = str(raw or "").strip().lower()
        if keyword and keyword not in cleaned:
            cleaned.append(keyword)
    if not cleaned:
        raise ValidationError("At least one keyword is required")

    if isinstance(percent, bool):
        raise ValidationError("percent must be an integer between 1 and 100")
    try:
        pct = int(str(percent).strip())
    except (TypeError, ValueError):
        raise ValidationError("percent must be an integer between 1 and 100")
    if pct < 1 or pct > 100:
        raise ValidationError("percent must be an integer between 1 and 100")

    return PromotionConfig(keywords=tuple(cleaned), percent=pct)


class PromotionRegistry:
    def __init__(self, initial: PromotionConfig):
        self._config = initial
        self._lock = threading.Lock()

    def snapshot(self) -> PromotionConfig:
        return self._config

    def update(self, keywords, percent) -> PromotionConfig:
        config = build_config(keywords, percent)
        with self._lock:
            self._config = config
        return config


def init_registry(app) -> PromotionRegistry:
    registry = PromotionRegistry(
        build_config(app.config["PROMOTION_KEYWORDS"], app.config["PROMOTION_PERCENT"])
    )
    app.extensions["promotion_registry"] = registry
    return registry


def get_registry() -> PromotionRegistry:
    return current_app.extensions["promotion_registry"]

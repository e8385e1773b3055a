#!/usr/bin/env python3
"""
Event topic registry: read-through cache of known event signatures.
"""

import logging
from typing import Callable, Dict, List, Optional

from .models import EventTopic

logger = logging.getLogger(__name__)


class EventTopicRegistry:
    """Caches event topics for the lifetime of an ingestion process.

    The loader is called on first use and again after ``invalidate()``; lookups are
    keyed by lower-cased topic0.
    """

    def __init__(self, loader: Callable[[], List[EventTopic]]):
        self._loader = loader
        self._topics: Optional[List[EventTopic]] = None
        self._by_topic0: Dict[str, EventTopic] = {}

    def _ensure_loaded(self) -> None:
        if self._topics is not None:
            return
        topics = list(self._loader())
        self._by_topic0 = {t.topic0.lower(): t for t in topics}
        self._topics = topics
        logger.info(f"Loaded {len(topics)} event topics")

    def all(self) -> List[EventTopic]:
        self._ensure_loaded()
        return list(self._topics)

    def find(self, topic0: Optional[str]) -> Optional[EventTopic]:
        if not topic0:
            return None
        self._ensure_loaded()
        return self._by_topic0.get(topic0.lower())

    def topic0s(self) -> List[str]:
        """Topic hashes for an eth_getLogs OR filter"""
        self._ensure_loaded()
        return list(self._by_topic0.keys())

    def invalidate(self) -> None:
        self._topics = None
        self._by_topic0 = {}

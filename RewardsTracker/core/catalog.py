"""Read-only card catalog.

The catalog describes the card products a tracked card can reference through
its ``cardId``. It is published by an external batch job and only ever read
here: the last downloaded feed is cached on disk, and the copy bundled with
the application is used until a feed has been downloaded.
"""

import datetime
import json
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import requests

from .filestore import atomic_write
from .records import parse_timestamp
from .signals import signals
from ..status import status

REQUEST_TIMEOUT = 15


@dataclass(frozen=True)
class CardDefinition:
    """One card product from the catalog."""
    id: str
    name: str
    issuer: str = ''
    annual_fee: float = 0
    data: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CardDefinition':
        issuer = data.get('issuer', '')
        if isinstance(issuer, dict):
            issuer = issuer.get('name', '')
        return cls(
            id=str(data['id']),
            name=str(data.get('name', '')),
            issuer=str(issuer or ''),
            annual_fee=data.get('annualFee') or 0,
            data=dict(data),
        )


def parse_feed(document: Any) -> Dict[str, Any]:
    """Validate a catalog document.

    Returns:
        dict: ``version``, ``last_updated`` and ``cards`` keyed by id.

    Raises:
        status.CatalogInvalidException: If the document is malformed.
    """
    if not isinstance(document, dict):
        raise status.CatalogInvalidException('The catalog must be a JSON object.')
    cards = document.get('cards')
    if not isinstance(cards, list):
        raise status.CatalogInvalidException('The catalog has no "cards" array.')

    parsed = {}
    for item in cards:
        if not isinstance(item, dict) or not item.get('id'):
            raise status.CatalogInvalidException(f'Invalid catalog card entry: {item!r}')
        card = CardDefinition.from_dict(item)
        parsed[card.id] = card

    return {
        'version': str(document.get('version', '')),
        'last_updated': parse_timestamp(document['lastUpdated']) if document.get('lastUpdated') else None,
        'cards': parsed,
    }


class CatalogAPI:
    """Queryable card catalog with cached and bundled fallbacks.

    Args:
        cache_path: Where the last downloaded feed is kept.
        bundled_path: The feed shipped with the application.
        feed_url: Where :meth:`refresh` downloads the feed from.
    """

    def __init__(self, cache_path: Optional[Union[str, pathlib.Path]] = None,
                 bundled_path: Optional[Union[str, pathlib.Path]] = None,
                 feed_url: Optional[str] = None):
        if cache_path is None or bundled_path is None:
            from ..settings import lib
            cache_path = cache_path or lib.settings.catalog_cache_path
            bundled_path = bundled_path or lib.settings.catalog_template
        self.cache_path = pathlib.Path(cache_path)
        self.bundled_path = pathlib.Path(bundled_path)
        self.feed_url = feed_url or ''

        self.version: str = ''
        self.last_updated: Optional[datetime.datetime] = None
        self._cards: Dict[str, CardDefinition] = {}

        self.load()

    def _apply(self, feed: Dict[str, Any]) -> None:
        self.version = feed['version']
        self.last_updated = feed['last_updated']
        self._cards = feed['cards']
        signals.catalogChanged.emit()

    def _load_file(self, path: pathlib.Path) -> bool:
        if not path.exists():
            return False
        try:
            with path.open('r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, ValueError) as ex:
            logging.warning(f'Could not read catalog {path}: {ex}')
            return False
        try:
            self._apply(parse_feed(document))
        except status.CatalogInvalidException:
            return False
        logging.debug(f'Loaded {len(self._cards)} catalog cards from {path}')
        return True

    def load(self) -> None:
        """Load the cached feed, falling back to the bundled one."""
        if self._load_file(self.cache_path):
            return
        if not self._load_file(self.bundled_path):
            logging.warning('No card catalog available.')

    def refresh(self) -> bool:
        """Download the feed and replace the cache.

        Any failure keeps the current catalog.

        Returns:
            bool: True if a new feed was applied.
        """
        if not self.feed_url:
            logging.debug('No catalog feed url configured.')
            return False

        try:
            response = requests.get(self.feed_url, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            document = response.json()
        except (requests.RequestException, ValueError) as ex:
            logging.warning(f'Failed to fetch catalog feed from {self.feed_url}: {ex}')
            return False

        try:
            feed = parse_feed(document)
        except status.CatalogInvalidException:
            return False

        try:
            atomic_write(self.cache_path, json.dumps(document, ensure_ascii=False).encode('utf-8'))
        except OSError as ex:
            logging.warning(f'Could not cache catalog feed: {ex}')

        self._apply(feed)
        logging.info(f'Catalog updated to version "{self.version}" with {len(self._cards)} cards.')
        return True

    def lookup(self, card_catalog_id: str) -> Optional[CardDefinition]:
        return self._cards.get(card_catalog_id)

    def cards(self) -> List[CardDefinition]:
        return sorted(self._cards.values(), key=lambda c: c.name)

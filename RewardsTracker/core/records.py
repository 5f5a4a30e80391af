"""
Record model for the synchronized rewards data.

Defines the entity collections, the content-based business keys used to match
records minted independently on different devices, the :class:`Entity` and
:class:`Snapshot` containers and their JSON representation, and
:class:`RecordsAPI`, the synchronous local-only interface callers use to
mutate records.

Every mutation goes through the store's single-writer lock, is written to the
local store and marked dirty before the call returns. No remote I/O happens
inline; the orchestrator picks up the mutation through the ``mutated`` signal.
"""

import copy
import datetime
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import dateutil.parser
import pandas as pd
from PySide6 import QtCore

from .signals import signals

SCHEMA_VERSION = 1

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
ONE_MICROSECOND = datetime.timedelta(microseconds=1)

RESERVED_FIELDS = ('id', 'lastModified', 'remoteRef')

#: Namespace for ids derived from business keys of records that arrive without one.
ID_NAMESPACE = uuid.UUID('6f1c1a52-8e3b-4a39-9a8f-2f6b1f9d7c41')


class Collection(enum.StrEnum):
    """Entity collections. Values are the array names used in the shared file."""
    Cards = 'cards'
    PointsBalances = 'pointsBalances'
    CompanionPasses = 'companionPasses'
    Applications = 'applications'
    CreditPulls = 'creditPulls'
    Holders = 'holders'


#: Payload fields that make up each collection's business key, in order.
BUSINESS_KEY_FIELDS: Dict[Collection, Tuple[str, ...]] = {
    Collection.Cards: ('cardId', 'openDate'),
    Collection.PointsBalances: ('currency', 'holder'),
    Collection.CompanionPasses: ('type', 'holder'),
    Collection.Applications: ('cardName', 'holder', 'applicationDate'),
    Collection.CreditPulls: ('bureau', 'creditor', 'date'),
    Collection.Holders: ('name',),
}

DATE_FIELDS = {'openDate', 'applicationDate', 'date'}

Key = Tuple[Collection, str]


def now() -> datetime.datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: Any) -> datetime.datetime:
    """Parse a timestamp written by any device.

    Accepts datetimes and ISO-8601 strings with or without a ``Z`` suffix or
    offset. Values without an offset are taken as UTC. Anything unparsable
    becomes the epoch, so it loses every comparison.

    Args:
        value: A datetime, an ISO-8601 string or None.

    Returns:
        datetime.datetime: A timezone-aware UTC datetime.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = dateutil.parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            try:
                dt = dateutil.parser.parse(value.strip())
            except (ValueError, OverflowError):
                logging.warning(f'Unparsable timestamp "{value}", using epoch.')
                return EPOCH
    else:
        return EPOCH

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_timestamp(dt: Optional[datetime.datetime]) -> Optional[str]:
    """Format a datetime as the ISO-8601 UTC string stored on disk."""
    if dt is None:
        return None
    return dt.astimezone(datetime.timezone.utc).isoformat(timespec='microseconds').replace('+00:00', 'Z')


def _normalise_part(name: str, value: Any) -> str:
    if value is None:
        return ''
    text = str(value).strip()
    if not text:
        return ''
    if name in DATE_FIELDS:
        try:
            return dateutil.parser.isoparse(text).date().isoformat()
        except (ValueError, OverflowError):
            return text[:10].casefold()
    return text.casefold()


def business_key(collection: Collection, payload: Dict[str, Any], entity_id: str = '') -> str:
    """Derive the content-based identity of a record.

    Key parts are stripped and case-folded, dates are reduced to
    ``YYYY-MM-DD`` and the parts are joined with ``|``. A record whose key
    fields are all empty falls back to ``id:<id>`` so unrelated incomplete
    records never match each other.

    Args:
        collection: The record's collection.
        payload: The record's domain fields.
        entity_id: The record's id, used for the fallback key.

    Returns:
        str: The business key.
    """
    parts = [_normalise_part(name, payload.get(name)) for name in BUSINESS_KEY_FIELDS[Collection(collection)]]
    if not any(parts):
        return f'id:{entity_id}'
    return '|'.join(parts)


def derived_id(collection: Collection, payload: Dict[str, Any]) -> str:
    """Return a deterministic id for a record that arrived without one."""
    key = business_key(collection, payload)
    if key.startswith('id:'):
        key = json.dumps(payload, sort_keys=True, default=str)
    return str(uuid.uuid5(ID_NAMESPACE, f'{collection}|{key}'))


@dataclass
class Entity:
    """One synchronized record.

    Attributes:
        collection: The collection the record belongs to.
        id: Identifier, unique within the collection.
        payload: Domain fields.
        last_modified: Time of the last local write on the device that made it.
        remote_ref: Handle assigned by the remote store on first upload.
        business_key: Content-based identity, derived from the payload when empty.
    """
    collection: Collection
    id: str
    payload: Dict[str, Any]
    last_modified: datetime.datetime = EPOCH
    remote_ref: Optional[str] = None
    business_key: str = ''

    def __post_init__(self):
        self.collection = Collection(self.collection)
        self.last_modified = parse_timestamp(self.last_modified)
        if not self.business_key:
            self.business_key = business_key(self.collection, self.payload, self.id)

    @property
    def key(self) -> Key:
        return self.collection, self.id

    def copy(self, **changes) -> 'Entity':
        """Return a deep copy of the entity with ``changes`` applied."""
        changes.setdefault('payload', copy.deepcopy(self.payload))
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Return the element written into a collection array of the shared file."""
        data = dict(self.payload)
        data['id'] = self.id
        data['lastModified'] = format_timestamp(self.last_modified)
        if self.remote_ref:
            data['remoteRef'] = self.remote_ref
        return data

    @classmethod
    def from_dict(cls, collection: Collection, data: Dict[str, Any],
                  default_last_modified: Optional[datetime.datetime] = None) -> 'Entity':
        """Build an entity from a collection array element.

        Elements missing an ``id`` get one derived from their business key, and
        elements missing ``lastModified`` take ``default_last_modified``.
        """
        payload = {k: v for k, v in data.items() if k not in RESERVED_FIELDS}
        entity_id = data.get('id') or derived_id(collection, payload)
        last_modified = data.get('lastModified') or default_last_modified or EPOCH
        return cls(
            collection=Collection(collection),
            id=str(entity_id),
            payload=payload,
            last_modified=last_modified,
            remote_ref=data.get('remoteRef') or None,
        )


class Snapshot:
    """An unordered set of entities plus whole-snapshot metadata.

    Entities are indexed by ``(collection, id)``. Two snapshots compare equal
    when they hold equal entities, regardless of order or metadata.

    Attributes:
        schema_version (int): Version of the persisted layout.
        last_modified (datetime.datetime): Time of the last write of the whole snapshot.
        last_modified_by (str): Device identity of that write.
        extra (dict): Unknown top-level fields read from the shared file, written back unchanged.
    """

    def __init__(self, entities: Iterable[Entity] = (), schema_version: int = SCHEMA_VERSION,
                 last_modified: Optional[datetime.datetime] = None, last_modified_by: str = '',
                 extra: Optional[Dict[str, Any]] = None):
        self._entities: Dict[Key, Entity] = {}
        for entity in entities:
            self.add(entity)
        self.schema_version = schema_version
        self.last_modified = parse_timestamp(last_modified) if last_modified else EPOCH
        self.last_modified_by = last_modified_by or ''
        self.extra = dict(extra or {})

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self._entities.values()))

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, key: Key) -> bool:
        return key in self._entities

    def __eq__(self, other):
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._entities == other._entities

    def __repr__(self):
        return (f'<Snapshot entities={len(self)} last_modified={format_timestamp(self.last_modified)} '
                f'by="{self.last_modified_by}">')

    def add(self, entity: Entity) -> None:
        self._entities[entity.key] = entity

    def discard(self, key: Key) -> None:
        self._entities.pop(key, None)

    def get(self, collection: Collection, entity_id: str) -> Optional[Entity]:
        return self._entities.get((Collection(collection), entity_id))

    def by_collection(self, collection: Collection) -> List[Entity]:
        collection = Collection(collection)
        return [e for e in self._entities.values() if e.collection == collection]

    def ids(self) -> set:
        """Return the ``(collection, id)`` keys of all entities."""
        return set(self._entities)

    def copy(self) -> 'Snapshot':
        return Snapshot(
            (e.copy() for e in self._entities.values()),
            schema_version=self.schema_version,
            last_modified=self.last_modified,
            last_modified_by=self.last_modified_by,
            extra=copy.deepcopy(self.extra),
        )

    def to_json(self) -> Dict[str, Any]:
        """Return the shared-file document for this snapshot.

        Collections are always written as arrays of objects, each carrying its
        ``id`` and ``lastModified``.
        """
        data: Dict[str, Any] = dict(self.extra)
        data['schemaVersion'] = self.schema_version
        data['lastModified'] = format_timestamp(self.last_modified)
        data['lastModifiedBy'] = self.last_modified_by
        for collection in Collection:
            entities = sorted(self.by_collection(collection), key=lambda e: e.id)
            data[collection.value] = [e.to_dict() for e in entities]
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Snapshot':
        """Build a snapshot from a shared-file document.

        Older layouts are accepted: ``pointsBalances`` as an object mapping a
        currency to its balance and ``holders`` as an array of names. Unknown
        top-level fields are kept in :attr:`extra`.

        Raises:
            ValueError: If ``data`` is not an object.
        """
        if not isinstance(data, dict):
            raise ValueError(f'Expected a JSON object, got {type(data).__name__}.')

        known = {'schemaVersion', 'lastModified', 'lastModifiedBy'} | {c.value for c in Collection}
        extra = {k: v for k, v in data.items() if k not in known}

        stamp = parse_timestamp(data.get('lastModified')) if data.get('lastModified') else EPOCH
        snapshot = cls(
            schema_version=int(data.get('schemaVersion') or SCHEMA_VERSION),
            last_modified=stamp,
            last_modified_by=data.get('lastModifiedBy') or '',
            extra=extra,
        )

        for collection in Collection:
            for element in _iter_elements(collection, data.get(collection.value)):
                snapshot.add(Entity.from_dict(collection, element, default_last_modified=stamp))
        return snapshot


def _iter_elements(collection: Collection, value: Any) -> Iterator[Dict[str, Any]]:
    if value is None:
        return
    if collection == Collection.PointsBalances and isinstance(value, dict):
        for currency, balance in value.items():
            yield {'currency': currency, 'balance': balance}
        return
    if not isinstance(value, list):
        logging.warning(f'Ignoring "{collection}": expected an array, got {type(value).__name__}.')
        return
    for element in value:
        if isinstance(element, dict):
            yield element
        elif collection == Collection.Holders and isinstance(element, str):
            yield {'name': element}
        else:
            logging.warning(f'Ignoring malformed "{collection}" element: {element!r}')


class RecordsAPI(QtCore.QObject):
    """Local-only add/update/delete/list over every collection.

    Signals:
        mutated (str, str): Emitted with the collection and entity id after every local write.
    """
    mutated = QtCore.Signal(str, str)

    def __init__(self, store, journal, catalog=None, clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None):
        super().__init__(parent=parent)
        self.store = store
        self.journal = journal
        self.catalog = catalog
        self._clock = clock or now

    def _stamp(self, previous: Optional[datetime.datetime] = None) -> datetime.datetime:
        t = self._clock()
        if previous is not None and t <= previous:
            t = previous + ONE_MICROSECOND
        return t

    def _notify(self, collection: Collection, entity_id: str) -> None:
        self.mutated.emit(collection.value, entity_id)
        signals.localMutation.emit(collection.value, entity_id)
        signals.recordsChanged.emit(collection.value)

    def _check_catalog(self, entity: Entity) -> None:
        if self.catalog is None or entity.collection != Collection.Cards:
            return
        card_id = entity.payload.get('cardId')
        if card_id and self.catalog.lookup(card_id) is None:
            logging.warning(f'Card {entity.id} references unknown catalog id "{card_id}".')

    def add(self, collection: Collection, payload: Dict[str, Any], id: Optional[str] = None) -> Entity:
        """Create a record locally and mark it dirty.

        Args:
            collection: Target collection.
            payload: Domain fields.
            id: Optional identifier. A uuid4 is minted when omitted.

        Returns:
            Entity: The stored entity.

        Raises:
            ValueError: If an entity with the same id already exists.
        """
        collection = Collection(collection)
        entity_id = id or str(uuid.uuid4())
        with self.store.lock:
            if self.store.get(collection, entity_id) is not None:
                raise ValueError(f'{collection} already contains "{entity_id}".')
            entity = Entity(collection, entity_id, dict(payload), last_modified=self._stamp())
            self.store.put(entity)
            self.journal.mark_dirty(entity.key)
        logging.debug(f'Added {collection}/{entity_id}')
        self._check_catalog(entity)
        self._notify(collection, entity_id)
        return entity

    def update(self, collection: Collection, id: str, payload: Dict[str, Any]) -> Entity:
        """Merge ``payload`` over an existing record's fields and mark it dirty.

        ``last_modified`` never moves backwards even if the clock does. The id
        and remote ref are kept, but the business key is derived again from
        the merged fields: correcting a card's catalog reference or open date
        changes which records on other devices it is matched with.

        Raises:
            KeyError: If the record does not exist.
        """
        collection = Collection(collection)
        with self.store.lock:
            existing = self.store.get(collection, id)
            if existing is None:
                raise KeyError(f'{collection}/{id} not found.')
            new_payload = {**existing.payload, **payload}
            entity = Entity(
                collection, id, new_payload,
                last_modified=self._stamp(existing.last_modified),
                remote_ref=existing.remote_ref,
            )
            self.store.put(entity)
            self.journal.mark_dirty(entity.key)
        logging.debug(f'Updated {collection}/{id}')
        self._check_catalog(entity)
        self._notify(collection, id)
        return entity

    def delete(self, collection: Collection, id: str) -> None:
        """Remove a record locally and queue its deletion for the remote."""
        collection = Collection(collection)
        with self.store.lock:
            existing = self.store.get(collection, id)
            if existing is None:
                logging.warning(f'Cannot delete {collection}/{id}: not found.')
                return
            self.store.remove(collection, id)
            self.journal.clear([existing.key])
            self.journal.enqueue_deletion(existing, deleted_at=self._stamp(existing.last_modified))
        logging.debug(f'Deleted {collection}/{id}')
        self._notify(collection, id)

    def get(self, collection: Collection, id: str) -> Optional[Entity]:
        with self.store.lock:
            return self.store.get(Collection(collection), id)

    def list(self, collection: Collection) -> List[Entity]:
        with self.store.lock:
            return self.store.list(Collection(collection))

    def frame(self, collection: Collection) -> pd.DataFrame:
        """Return the collection as a DataFrame with one row per record.

        Nested payload fields are flattened with dotted column names.
        """
        entities = self.list(collection)
        columns = ['id', 'business_key', 'last_modified', 'remote_ref']
        if not entities:
            return pd.DataFrame(columns=columns)

        df = pd.json_normalize([e.payload for e in entities])
        meta = pd.DataFrame({
            'id': [e.id for e in entities],
            'business_key': [e.business_key for e in entities],
            'last_modified': [e.last_modified for e in entities],
            'remote_ref': [e.remote_ref for e in entities],
        })
        df = df.drop(columns=[c for c in columns if c in df.columns])
        return pd.concat([meta, df], axis=1)

    def add_credit_pulls(self, pulls: Iterable[Dict[str, Any]]) -> List[Entity]:
        """Import credit pulls, skipping any already tracked.

        A pull is a duplicate when its bureau, creditor and date match an
        existing pull or one earlier in the same batch.

        Returns:
            list[Entity]: The pulls that were added.
        """
        added = []
        with self.store.lock:
            seen = {e.business_key for e in self.store.list(Collection.CreditPulls)}
            for pull in pulls:
                key = business_key(Collection.CreditPulls, pull)
                if not key.startswith('id:') and key in seen:
                    logging.debug(f'Skipping duplicate credit pull {key}')
                    continue
                seen.add(key)
                added.append(self.add(Collection.CreditPulls, pull))
        logging.info(f'Imported {len(added)} credit pull(s).')
        return added

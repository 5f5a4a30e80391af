"""Assembles the sync engine from the configured settings.

The object returned by :func:`build_engine` is owned by whoever runs the
application's event loop. It is started once, and closed before the process
exits so pending local changes get flushed.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .catalog import CatalogAPI
from .database import DatabaseAPI
from .filestore import SharedFileStore
from .journal import JournalAPI
from .records import RecordsAPI
from .remote import RemoteAdapter
from .service import SheetsRecordStore
from .sync import SyncAPI


@dataclass
class Engine:
    """The wired-up services of one running process."""
    store: DatabaseAPI
    journal: JournalAPI
    catalog: CatalogAPI
    records: RecordsAPI
    adapter: RemoteAdapter
    sync: SyncAPI

    def start(self) -> None:
        self.sync.start()

    def close(self, flush: bool = True) -> None:
        if self.sync.is_closed:
            return
        self.records.mutated.disconnect(self.sync.schedule)
        self.sync.close(flush=flush)


def build_adapter(settings) -> RemoteAdapter:
    """Return the transport selected by the ``remote`` section."""
    remote = settings.get_section('remote')
    sync = settings.get_section('sync')

    if remote['kind'] == 'sheets':
        logging.debug(f'Using spreadsheet "{remote["spreadsheet_id"]}" as the remote store.')
        return SheetsRecordStore(
            remote['spreadsheet_id'],
            settings.device_id,
            poll_interval=sync['poll_interval_s'],
        )

    logging.debug(f'Using shared file "{settings.remote_path}" as the remote store.')
    return SharedFileStore(
        settings.remote_path,
        settings.device_id,
        poll_interval=sync['poll_interval_s'],
        suppression_window=sync['suppression_window_s'],
    )


def build_engine(settings=None, adapter: Optional[RemoteAdapter] = None) -> Engine:
    """Build every service from ``settings``.

    Args:
        settings: A :class:`~RewardsTracker.settings.lib.SettingsAPI`. Defaults to the module singleton.
        adapter: Use this transport instead of the configured one.

    Returns:
        Engine: The assembled, not yet started, engine.
    """
    if settings is None:
        from ..settings import lib
        settings = lib.settings

    sync_section = settings.get_section('sync')

    store = DatabaseAPI(settings.db_path)
    journal = JournalAPI(store)
    catalog = CatalogAPI(
        cache_path=settings.catalog_cache_path,
        bundled_path=settings.catalog_template,
        feed_url=settings.get_section('catalog')['feed_url'],
    )
    records = RecordsAPI(store, journal, catalog=catalog)
    adapter = adapter or build_adapter(settings)

    sync = SyncAPI(
        store,
        journal,
        adapter,
        settings.device_id,
        debounce_ms=sync_section['debounce_ms'],
        granularity=settings.get_section('merge')['granularity'],
        threaded=sync_section['threaded'],
    )
    records.mutated.connect(sync.schedule)

    logging.info(f'Sync engine ready for device {settings.device_id}.')
    return Engine(store, journal, catalog, records, adapter, sync)

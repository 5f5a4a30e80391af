"""Settings library for the sync and authentication configuration.

Provides:
    - Schema validation for the sync.json structure.
    - Loading, saving, reverting and reloading configuration sections.
    - Application paths resolved from the platform's app data location.
    - A persistent device identity used to stamp local writes.
"""

import json
import logging
import pathlib
import shutil
import uuid
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'RewardsTracker'

REMOTE_KINDS: List[str] = ['file', 'sheets']
MERGE_GRANULARITIES: List[str] = ['entity', 'snapshot']

SYNC_SCHEMA: Dict[str, Any] = {
    'device': {
        'type': dict,
        'required': True,
        'item_schema': {
            'id': {'type': str, 'required': True},
            'name': {'type': str, 'required': True},
        }
    },
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'kind': {'type': str, 'required': True, 'allowed_values': REMOTE_KINDS},
            'path': {'type': str, 'required': True},
            'spreadsheet_id': {'type': str, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'debounce_ms': {'type': int, 'required': True, 'min': 0},
            'poll_interval_s': {'type': int, 'required': True, 'min': 1},
            'suppression_window_s': {'type': (int, float), 'required': True, 'min': 0},
            'threaded': {'type': bool, 'required': True},
        }
    },
    'merge': {
        'type': dict,
        'required': True,
        'item_schema': {
            'granularity': {'type': str, 'required': True, 'allowed_values': MERGE_GRANULARITIES},
        }
    },
    'catalog': {
        'type': dict,
        'required': True,
        'item_schema': {
            'feed_url': {'type': str, 'required': True},
        }
    },
}


def _validate_section(section_name: str, section_data: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a single sync.json section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section_data: The section's values.
        item_schema: Dict describing required fields, types, allowed values and lower bounds.

    Raises:
        TypeError: If the section is not a dict or a field has the wrong type.
        ValueError: If a required field is missing, not allowed, or out of range.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section_data, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, specs in item_schema.items():
        if specs['required'] and field not in section_data:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section_data:
            continue

        value = section_data[field]
        # bool is an int subclass but never a valid number here
        if isinstance(value, bool) and specs['type'] is not bool:
            msg = f'Section "{section_name}" field "{field}" must be {specs["type"]}, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)
        if 'allowed_values' in specs and value not in specs['allowed_values']:
            msg = f'Section "{section_name}" field "{field}" must be one of {specs["allowed_values"]}, got "{value}".'
            logging.error(msg)
            raise ValueError(msg)
        if 'min' in specs and value < specs['min']:
            msg = f'Section "{section_name}" field "{field}" must be >= {specs["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Where the engine keeps its configuration, token, store, cache and logs.

    Everything lives under the platform's app data location. Missing
    directories are created and the default sync.json and client_secret.json
    are copied from the bundled templates on first use.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        root = pathlib.Path(
            QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation))
        logging.debug(f'{app_name} data lives in {root}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.client_secret_template: pathlib.Path = self.template_dir / 'client_secret.json.template'
        self.sync_template: pathlib.Path = self.template_dir / 'sync.json.template'
        self.catalog_template: pathlib.Path = self.template_dir / 'catalog.json.template'

        self.config_dir: pathlib.Path = root / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'
        self.cache_dir: pathlib.Path = root / 'cache'
        self.shared_dir: pathlib.Path = root / 'shared'

        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.sync_path: pathlib.Path = self.config_dir / 'sync.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'store.db'
        self.catalog_cache_path: pathlib.Path = self.cache_dir / 'catalog.json'
        self.shared_file_path: pathlib.Path = self.shared_dir / 'rewards.json'
        self.log_path: pathlib.Path = root / 'logs' / 'sync.log'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing directories and copy default config files into place.

        Raises:
            FileNotFoundError: A bundled template is missing.
        """
        for template in (self.client_secret_template, self.sync_template, self.catalog_template):
            if not template.exists():
                msg: str = f'Missing template: {template}'
                logging.error(msg)
                raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir, self.cache_dir):
            directory.mkdir(parents=True, exist_ok=True)

        for template, target in ((self.client_secret_template, self.client_secret_path),
                                 (self.sync_template, self.sync_path)):
            if not target.exists():
                logging.debug(f'Creating {target.name} from {template.name}')
                shutil.copy(template, target)

    def revert_sync_to_template(self) -> None:
        shutil.copy(self.sync_template, self.sync_path)

    def revert_client_secret_to_template(self) -> None:
        shutil.copy(self.client_secret_template, self.client_secret_path)


def _read_json(path: pathlib.Path) -> Dict[str, Any]:
    with path.open('r', encoding='utf-8') as f:
        return json.load(f)


def _write_json(path: pathlib.Path, data: Dict[str, Any]) -> None:
    with path.open('w', encoding='utf-8') as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


class SettingsAPI(ConfigPaths):
    """
    Sections of sync.json plus the OAuth client secret, kept in memory and
    written through to disk.

    ``client_secret`` is addressed like a section but lives in its own file.
    Every change emits ``signals.configSectionChanged`` with the section name.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, sync_path: Optional[str] = None, client_secret_path: Optional[str] = None) -> None:
        """
        Args:
            sync_path: Use this sync.json instead of the app data one.
            client_secret_path: Use this client_secret.json instead of the app data one.
        """
        super().__init__()

        if sync_path:
            self.sync_path = pathlib.Path(sync_path)
        if client_secret_path:
            self.client_secret_path = pathlib.Path(client_secret_path)

        self.sync_data: Dict[str, Any] = {k: {} for k in SYNC_SCHEMA}
        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    @property
    def device_id(self) -> str:
        """The identity this installation stamps on its writes."""
        return self.sync_data['device']['id']

    @property
    def remote_path(self) -> pathlib.Path:
        """The configured shared file, or the default one in the app data directory."""
        path = self.sync_data['remote'].get('path')
        return pathlib.Path(path) if path else self.shared_file_path

    def init_data(self) -> None:
        """Load both files, make sure a device id exists, and announce every section."""
        self.load_sync()
        self.load_client_secret()
        self._ensure_device_id()

        for section in ('client_secret', *SYNC_SCHEMA):
            self._changed(section)

    def _ensure_device_id(self) -> None:
        if self.sync_data['device'].get('id'):
            return
        device_id = uuid.uuid4().hex
        logging.info(f'Generated device id {device_id}')
        self.sync_data['device']['id'] = device_id
        self.save_section('device')

    @staticmethod
    def _changed(section_name: str) -> None:
        from ..core.signals import signals
        signals.configSectionChanged.emit(section_name)

    def _check_section(self, section_name: str, action: str) -> None:
        if section_name not in self.sync_data:
            msg: str = f'Cannot {action} unknown section "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

    def load_sync(self) -> Dict[str, Any]:
        """Read and validate sync.json, replacing every in-memory section.

        Raises:
            status.SyncConfigNotFoundException: sync.json does not exist.
            status.SyncConfigInvalidException: sync.json is not JSON or fails the schema.
        """
        logging.debug(f'Loading sync config from "{self.sync_path}"')
        if not self.sync_path.exists():
            raise status.SyncConfigNotFoundException(str(self.sync_path))

        try:
            data = _read_json(self.sync_path)
            self.validate_sync_data(data)
        except (ValueError, TypeError) as ex:
            raise status.SyncConfigInvalidException(str(ex)) from ex

        self.sync_data = data
        return self.sync_data

    def load_client_secret(self) -> Dict[str, Any]:
        """Read and validate client_secret.json.

        Raises:
            status.ClientSecretNotFoundException: The file does not exist.
            status.ClientSecretInvalidException: The file is not JSON or lacks OAuth fields.
        """
        path = self.client_secret_path
        if not path.exists():
            raise status.ClientSecretNotFoundException(str(path))
        try:
            data = _read_json(path)
        except ValueError as ex:
            raise status.ClientSecretInvalidException(f'{path.name} is not valid JSON') from ex

        self.validate_client_secret(data)
        self.client_secret_data = data
        return self.client_secret_data

    def validate_client_secret(self, data=None) -> str:
        """Check an OAuth client configuration.

        Args:
            data (dict, optional): Defaults to the loaded client secret.

        Returns:
            str: The client type found, ``'installed'`` or ``'web'``.

        Raises:
            status.ClientSecretInvalidException: No client type, or required fields are missing.
        """
        data = self.client_secret_data if data is None else data

        for client_type in ('installed', 'web'):
            if client_type in data:
                break
        else:
            raise status.ClientSecretInvalidException('Client secret has neither an "installed" nor a "web" client.')

        missing = [k for k in self.required_client_secret_keys if k not in data[client_type]]
        if missing:
            raise status.ClientSecretInvalidException(
                f'"{client_type}" client is missing {", ".join(missing)}.')
        return client_type

    def validate_sync_data(self, data: Dict[str, Any] = None) -> None:
        """Validate sync data against SYNC_SCHEMA.

        Args:
            data (dict, optional): Defaults to the in-memory sync data.

        Raises:
            ValueError: A required section or field is missing, or a value is out of range.
            TypeError: A section or field has the wrong type.
        """
        data = self.sync_data if data is None else data
        if not isinstance(data, dict):
            raise TypeError('Sync data must be a dict.')

        for section_name, specs in SYNC_SCHEMA.items():
            if section_name in data:
                _validate_section(section_name, data[section_name], specs['item_schema'])
            elif specs.get('required'):
                msg: str = f'Missing required section: {section_name}'
                logging.error(msg)
                raise ValueError(msg)

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Return a shallow copy of a section.

        Raises:
            KeyError: Unknown section.
        """
        if section_name == 'client_secret':
            return self.client_secret_data.copy()
        return self.sync_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a section.

        On a validation error the previous value is kept and the error is re-raised.

        Raises:
            ValueError: Unknown section, or the data is invalid.
            TypeError: The data has the wrong types.
        """
        if section_name == 'client_secret':
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section(section_name)
            self._changed(section_name)
            return

        self._check_section(section_name, 'set')
        previous = self.sync_data[section_name]
        self.sync_data[section_name] = new_data
        try:
            self.validate_sync_data()
        except (ValueError, TypeError) as ex:
            logging.error(f'Rejected new "{section_name}" settings: {ex}')
            self.sync_data[section_name] = previous
            raise

        self.save_section(section_name)
        self._changed(section_name)

    def reload_section(self, section_name: str) -> None:
        """Re-read one section from disk. An invalid file leaves memory untouched.

        Raises:
            ValueError: Unknown section, or the file fails validation.
        """
        if section_name == 'client_secret':
            self.load_client_secret()
            self._changed(section_name)
            return

        self._check_section(section_name, 'reload')
        try:
            data = _read_json(self.sync_path)
            self.validate_sync_data(data)
        except (ValueError, TypeError) as ex:
            logging.error(f'Could not reload "{section_name}" from {self.sync_path}: {ex}')
            raise

        self.sync_data[section_name] = data[section_name]
        self._changed(section_name)

    def revert_section(self, section_name: str) -> None:
        """Reset a section to its template default and save it.

        The device section keeps its generated id.

        Raises:
            ValueError: Unknown section.
        """
        if section_name == 'client_secret':
            self.revert_client_secret_to_template()
            self.load_client_secret()
            self._changed(section_name)
            return

        self._check_section(section_name, 'revert')
        section = _read_json(self.sync_template)[section_name]
        if section_name == 'device':
            section['id'] = self.device_id

        self.sync_data[section_name] = section
        self.save_section(section_name)
        self._changed(section_name)

    def save_section(self, section_name: str) -> None:
        """Write one in-memory section to disk, leaving the file's other sections as they are.

        Raises:
            ValueError: Unknown section.
        """
        if section_name == 'client_secret':
            self.validate_client_secret(self.client_secret_data)
            _write_json(self.client_secret_path, self.client_secret_data)
            return

        self._check_section(section_name, 'save')
        on_disk = _read_json(self.sync_path)
        on_disk[section_name] = self.sync_data[section_name]
        logging.debug(f'Saving "{section_name}" to {self.sync_path}')
        _write_json(self.sync_path, on_disk)


settings: SettingsAPI = SettingsAPI()

"""
Deterministic reconciliation of a local and a remote snapshot.

Two policies are provided:

- :func:`merge` works per entity. Entities are matched by id, or by business
  key when two devices minted different ids for the same real-world object.
  A dirty local entity wins only when it is strictly newer; everything else
  resolves in favour of the remote, which holds the union of every device's
  confirmed state.
- :func:`merge_snapshot_lww` works on the whole snapshot. Whichever side was
  written last wins outright.

Neither function touches storage or the network.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .records import Entity, Key, Snapshot
from ..status import status


@dataclass
class MergeResult:
    """Outcome of a merge.

    Attributes:
        merged: The reconciled snapshot, to be persisted locally.
        to_upload: Entities the remote does not have in their merged form.
        warnings: Human-readable notes on ambiguous identity matches.
        superseded: Dirty local keys whose edits lost to a newer remote value.
        renamed: Local keys that were matched by business key, mapped to the
            remote-confirmed key the merged entity now uses.
    """
    merged: Snapshot
    to_upload: List[Entity] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    superseded: Set[Key] = field(default_factory=set)
    renamed: Dict[Key, Key] = field(default_factory=dict)


def _sort_key(entity: Entity):
    return entity.collection.value, entity.id


def _merged_metadata(merged: Snapshot, local: Snapshot, remote: Snapshot) -> None:
    merged.schema_version = max(local.schema_version, remote.schema_version)
    if local.last_modified > remote.last_modified:
        merged.last_modified = local.last_modified
        merged.last_modified_by = local.last_modified_by
    else:
        merged.last_modified = remote.last_modified
        merged.last_modified_by = remote.last_modified_by
    merged.extra = {**local.extra, **remote.extra}


def merge(local: Snapshot, remote: Optional[Snapshot], dirty: Iterable[Key]) -> MergeResult:
    """Reconcile ``local`` with ``remote`` entity by entity.

    Args:
        local: The local store's snapshot.
        remote: The fetched remote snapshot. None is treated as empty.
        dirty: Keys of locally mutated entities not yet confirmed uploaded.

    Returns:
        MergeResult: The merged snapshot and everything the caller must upload
        or update in the journal.
    """
    remote = remote if remote is not None else Snapshot()
    dirty = set(dirty)

    remote_by_business_key = defaultdict(list)
    for entity in sorted(remote, key=_sort_key):
        if not entity.business_key.startswith('id:'):
            remote_by_business_key[(entity.collection, entity.business_key)].append(entity)

    local_keys = local.ids()
    result = MergeResult(merged=Snapshot())
    matched_remote: Set[Key] = set()

    for local_entity in sorted(local, key=_sort_key):
        remote_entity = remote.get(local_entity.collection, local_entity.id)

        if remote_entity is None and not local_entity.business_key.startswith('id:'):
            candidates = [
                r for r in remote_by_business_key.get((local_entity.collection, local_entity.business_key), [])
                if r.key not in local_keys and r.key not in matched_remote
            ]
            if len(candidates) == 1:
                remote_entity = candidates[0]
                logging.debug(
                    f'Matched {local_entity.collection}/{local_entity.id} to remote {remote_entity.id} '
                    f'by business key "{local_entity.business_key}"'
                )
            elif len(candidates) > 1:
                msg = (
                    f'{status.get_message(status.Status.IdentityAmbiguous)} '
                    f'({local_entity.collection}/{local_entity.id} matches '
                    f'{", ".join(c.id for c in candidates)})'
                )
                logging.warning(msg)
                result.warnings.append(msg)

        if remote_entity is None:
            result.merged.add(local_entity)
            result.to_upload.append(local_entity)
            continue

        matched_remote.add(remote_entity.key)
        remote_ref = remote_entity.remote_ref or local_entity.remote_ref

        if local_entity.key in dirty and local_entity.last_modified > remote_entity.last_modified:
            winner = local_entity.copy(id=remote_entity.id, remote_ref=remote_ref)
            result.to_upload.append(winner)
        else:
            winner = remote_entity.copy(remote_ref=remote_ref)
            if local_entity.key in dirty:
                logging.info(
                    f'Local edit of {local_entity.collection}/{local_entity.id} superseded by a newer remote edit.'
                )
                result.superseded.add(local_entity.key)

        if local_entity.id != remote_entity.id:
            result.renamed[local_entity.key] = remote_entity.key
        result.merged.add(winner)

    for remote_entity in sorted(remote, key=_sort_key):
        if remote_entity.key not in matched_remote and remote_entity.key not in result.merged:
            result.merged.add(remote_entity.copy())

    _merged_metadata(result.merged, local, remote)
    logging.debug(
        f'Merged {len(local)} local and {len(remote)} remote entities into {len(result.merged)}; '
        f'{len(result.to_upload)} to upload.'
    )
    return result


def merge_snapshot_lww(local: Snapshot, remote: Optional[Snapshot], device_id: str,
                       dirty: Iterable[Key] = ()) -> MergeResult:
    """Reconcile by whole-snapshot last-writer-wins.

    Local dirty entities count as a write of the local snapshot by this
    device at their latest modification time. The local snapshot wins only
    when it is strictly newer and was written by ``device_id``; otherwise the
    remote snapshot is adopted verbatim and any dirty local edits are
    reported as superseded.

    Args:
        local: The local store's snapshot.
        remote: The fetched remote snapshot. None means the local one wins.
        device_id: This device's identity.
        dirty: Keys of locally mutated entities not yet confirmed uploaded.

    Returns:
        MergeResult: The winning snapshot. ``to_upload`` holds every local
        entity when the local snapshot won, and is empty otherwise.
    """
    dirty = set(dirty) & local.ids()
    local = local.copy()
    if dirty:
        latest = max(local.get(c, i).last_modified for c, i in dirty)
        if latest > local.last_modified:
            local.last_modified = latest
        local.last_modified_by = device_id

    if remote is None or (local.last_modified > remote.last_modified and local.last_modified_by == device_id):
        logging.debug('Local snapshot wins.')
        return MergeResult(merged=local, to_upload=sorted(local, key=_sort_key))

    logging.debug(f'Remote snapshot by "{remote.last_modified_by}" wins.')
    if dirty:
        logging.info(f'{len(dirty)} local edit(s) superseded by a newer remote snapshot.')
    return MergeResult(merged=remote.copy(), superseded=dirty)

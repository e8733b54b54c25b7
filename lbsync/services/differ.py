"""Add/remove delta between desired and actual listener backends."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from lbsync.models.schemas import Backend, SavedBackend


@dataclass(frozen=True)
class BackendDiff:
    to_add: list[Backend]
    to_remove: list[SavedBackend]

    @property
    def changed(self) -> bool:
        return bool(self.to_add or self.to_remove)


def diff_backends(
    desired: Sequence[Backend],
    actual: Sequence[SavedBackend],
    name_filter: Optional[Callable[[str], bool]] = None,
) -> BackendDiff:
    """Compute which backends to add and which to remove.

    Two backends are the same when resource id, port and NIC match; weight
    and name are ignored, so a weight change alone produces no delta.
    ``name_filter`` restricts ``actual`` to the backends the caller owns on a
    listener shared with other applications.
    """
    if name_filter is not None:
        actual = [b for b in actual if name_filter(b.name)]
    desired_ids = {b.identity for b in desired}
    actual_ids = {b.identity for b in actual}
    return BackendDiff(
        to_add=[b for b in desired if b.identity not in actual_ids],
        to_remove=[b for b in actual if b.identity not in desired_ids],
    )

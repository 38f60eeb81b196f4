"""Row-wise access to the columns of PlainEventContent files.

A ``ColumnReader`` exposes the trees of one file as groups of named
columns. Columns are bound once per file under an alias and then read row
by row; the stream decides which group to read when, so that trigger
information can be checked before the bulk of the event is touched.
"""

from __future__ import annotations

import abc
import logging

import awkward as ak

from pecreader.analysis_config import TREES

logger = logging.getLogger(__name__)


class ColumnReader(abc.ABC):
    """Interface of the columnar file reader used by ``EventStream``."""

    @abc.abstractmethod
    def open(self, path) -> None:
        ...

    @abc.abstractmethod
    def close(self) -> None:
        ...

    @property
    @abc.abstractmethod
    def num_entries(self) -> int:
        ...

    @abc.abstractmethod
    def bind(self, alias: str, branch: str, group: str, optional: bool = False) -> bool:
        """Bind ``branch`` of ``group`` under ``alias``.

        Returns False if an optional branch is missing; a missing mandatory
        branch raises ``KeyError``.
        """

    @abc.abstractmethod
    def read(self, index: int, group: str) -> dict:
        """Values of all columns bound in ``group`` for row ``index``, keyed by alias."""


class RawRow:
    """Scratch area holding the raw values of the current row.

    One instance lives for the lifetime of a stream and is overwritten group
    by group as rows are read.
    """

    def __init__(self):
        self._values = {}

    def clear(self) -> None:
        self._values.clear()

    def update(self, values: dict) -> None:
        self._values.update(values)

    def __getitem__(self, alias):
        return self._values[alias]

    def __contains__(self, alias) -> bool:
        return alias in self._values

    def get(self, alias, default=None):
        return self._values.get(alias, default)


def _row_value(value):
    """Per-row value of a column: numpy array for array branches, scalar otherwise."""
    if isinstance(value, ak.Array):
        if value.layout.parameter("__array__") == "string":
            return ak.to_list(value)
        return ak.to_numpy(value)
    return value


class UprootColumnReader(ColumnReader):
    """``ColumnReader`` backed by uproot.

    ``trees`` maps a group name to the tree paths that make it up, e.g.
    ``{"general": ["eventContent/BasicInfo", "eventContent/PUInfo"]}``. A
    branch is taken from the first tree of its group that contains it; trees
    absent from a file are ignored. Rows are read in chunks of
    ``step_size`` entries.
    """

    def __init__(self, trees: dict | None = None, step_size: int = 10000):
        self.trees = trees if trees is not None else TREES
        self.step_size = int(step_size)
        self._file = None
        self._path = None
        self._group_trees = {}
        self._bindings = {}
        self._chunks = {}

    def open(self, path) -> None:
        import uproot

        self.close()
        self._file = uproot.open(path)
        self._path = str(path)
        self._group_trees = {}
        for group, tree_paths in self.trees.items():
            found = []
            for tree_path in tree_paths:
                try:
                    found.append((tree_path, self._file[tree_path]))
                except KeyError:
                    logger.debug("Tree '%s' not present in %s", tree_path, path)
            self._group_trees[group] = found
        self._bindings = {group: {} for group in self.trees}
        self._chunks = {}

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
        self._file = None
        self._group_trees = {}
        self._bindings = {}
        self._chunks = {}

    @property
    def num_entries(self) -> int:
        self._require_open()
        for trees in self._group_trees.values():
            if trees:
                return int(trees[0][1].num_entries)
        return 0

    def bind(self, alias, branch, group, optional=False) -> bool:
        self._require_open()
        for tree_path, tree in self._group_trees.get(group, []):
            if branch in tree.keys():
                self._bindings[group][alias] = (tree_path, branch)
                return True
        if optional:
            return False
        raise KeyError(f"Branch '{branch}' not found in group '{group}' of {self._path}")

    def read(self, index, group) -> dict:
        self._require_open()
        values = {}
        by_tree = {}
        for alias, (tree_path, branch) in self._bindings.get(group, {}).items():
            by_tree.setdefault(tree_path, []).append((alias, branch))

        for tree_path, columns in by_tree.items():
            start, arrays = self._chunk(group, tree_path, index, [branch for _, branch in columns])
            for alias, branch in columns:
                values[alias] = _row_value(arrays[branch][index - start])
        return values

    def _chunk(self, group, tree_path, index, branches):
        key = (group, tree_path, tuple(branches))
        cached = self._chunks.get(key)
        if cached is not None:
            start, stop, arrays = cached
            if start <= index < stop:
                return start, arrays

        tree = dict(self._group_trees[group])[tree_path]
        start = (index // self.step_size) * self.step_size
        stop = min(start + self.step_size, int(tree.num_entries))
        arrays = tree.arrays(branches, entry_start=start, entry_stop=stop)
        self._chunks[key] = (start, stop, arrays)
        return start, arrays

    def _require_open(self):
        if self._file is None:
            raise RuntimeError("No file is open in the column reader.")

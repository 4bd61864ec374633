import logging
import os
import re

import numpy as np
import uproot

from event_plane.ep_constants import AP_RUN_PREFIX, AP_SEQ_MIN, AP_SEQ_MAX, AP_FILE_SUFFIX

logger = logging.getLogger(__name__)


def get_filtered_root_files(dir_path, run_prefix=AP_RUN_PREFIX, seq_min=AP_SEQ_MIN,
                            seq_max=AP_SEQ_MAX, suffix=AP_FILE_SUFFIX):
    """
    Lists ROOT files named <run_prefix>_<8-digit sequence><suffix> in dir_path
    whose sequence number lies in [seq_min, seq_max]. Sorted by name.
    """
    if not os.path.isdir(dir_path):
        logger.warning("Could not open or read directory: %s", dir_path)
        return []

    pattern = re.compile(rf"^{re.escape(run_prefix)}_(\d{{8}}){re.escape(suffix)}$")
    file_names = []
    for fname in sorted(os.listdir(dir_path)):
        full_path = os.path.join(dir_path, fname)
        if not os.path.isfile(full_path):
            continue
        match = pattern.match(fname)
        if match and seq_min <= int(match.group(1)) <= seq_max:
            logger.info("Adding file: %s", full_path)
            file_names.append(full_path)
    return file_names


def read_tree_arrays(filename, tree_path, branches=None):
    """
    Reads branches of a tree into a dict of numpy arrays (jagged branches
    become object arrays of per-entry arrays).

    Raises RuntimeError when the file cannot be opened or decoded, or the
    tree/branches are missing.
    """
    try:
        with uproot.open(filename) as f:
            tree = f[tree_path]
            missing = [b for b in (branches or []) if b not in tree.keys()]
            if missing:
                raise RuntimeError(f"Branches {missing} not found in '{tree_path}' of {filename}")
            return tree.arrays(branches, library="np")
    except uproot.KeyInFileError as e:
        raise RuntimeError(f"Could not find '{tree_path}' or its branches in {filename}: {e}") from e
    except uproot.DeserializationError as e:
        raise RuntimeError(f"Could not decode '{tree_path}' in {filename}: {e}") from e
    except (OSError, ValueError) as e:
        raise RuntimeError(f"Could not open file: {filename} ({e})") from e


def iterate_tree(filename, tree_path, branches=None, step_size=100000):
    """
    Opens and validates a tree, then returns a generator of chunks (dicts of
    numpy arrays). Raises RuntimeError immediately if the file, tree or any
    branch is missing.
    """
    try:
        f = uproot.open(filename)
    except (OSError, ValueError) as e:
        raise RuntimeError(f"Could not open input file: {filename} ({e})") from e

    try:
        tree = f[tree_path]
    except uproot.KeyInFileError as e:
        f.close()
        raise RuntimeError(f"Tree '{tree_path}' not found in {filename}") from e

    missing = [b for b in (branches or []) if b not in tree.keys()]
    if missing:
        f.close()
        raise RuntimeError(f"Branches {missing} not found in '{tree_path}' of {filename}")

    return _iterate_chunks(f, tree, branches, step_size)


def _iterate_chunks(f, tree, branches, step_size):
    with f:
        yield from tree.iterate(branches, step_size=step_size, library="np")


def first_entries(jagged, fill=np.nan):
    """First element of each entry of a jagged column; fill where empty."""
    return np.array([row[0] if len(row) else fill for row in jagged], dtype=np.float64)


def branch_types(columns):
    """uproot branch types for flat and fixed-size multi-dimensional columns."""
    types = {}
    for name, arr in columns.items():
        arr = np.asarray(arr)
        types[name] = np.dtype((arr.dtype, arr.shape[1:])) if arr.ndim > 1 else arr.dtype
    return types


def write_tree(output_filename, tree_name, columns, histograms=None):
    """
    Writes a new ROOT file holding one tree built from columns (all of equal
    length) plus optional (counts, edges) histograms.
    """
    columns = {name: np.ascontiguousarray(arr) for name, arr in columns.items()}
    out_dir = os.path.dirname(output_filename)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)

    with uproot.recreate(output_filename) as f:
        tree = f.mktree(tree_name, branch_types(columns))
        if columns and len(next(iter(columns.values()))) > 0:
            tree.extend(columns)
        for name, hist in (histograms or {}).items():
            f[name] = hist

    logger.info("Wrote tree '%s' to '%s'", tree_name, output_filename)


class TreeAppender:
    """
    Append-only output tree. The schema is fixed by the first chunk passed to
    extend(); empty chunks only create the tree.
    """

    def __init__(self, output_filename, tree_name):
        self.output_filename = output_filename
        self.tree_name = tree_name
        self.file = None
        self.tree = None
        self.n_entries = 0

    def __enter__(self):
        out_dir = os.path.dirname(self.output_filename)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        self.file = uproot.recreate(self.output_filename)
        return self

    def extend(self, columns):
        columns = {name: np.ascontiguousarray(arr) for name, arr in columns.items()}
        if self.tree is None:
            self.tree = self.file.mktree(self.tree_name, branch_types(columns))
        n = len(next(iter(columns.values())))
        if n > 0:
            self.tree.extend(columns)
            self.n_entries += n

    def __exit__(self, exc_type, exc, tb):
        self.file.close()
        if exc_type is not None:
            # no partial output from an aborted stage
            os.remove(self.output_filename)
            logger.error("Removed incomplete output '%s'", self.output_filename)
        else:
            logger.info("Wrote %d entries to '%s' in '%s'", self.n_entries, self.tree_name, self.output_filename)
        return False

import argparse
import logging

import numpy as np
import uproot

logger = logging.getLogger(__name__)


def _same(v1, v2):
    if v1.dtype == object or v2.dtype == object:
        return len(v1) == len(v2) and all(np.array_equal(a, b) for a, b in zip(v1, v2))
    return v1.shape == v2.shape and np.array_equal(v1, v2, equal_nan=v1.dtype.kind == "f")


def compare_trees(file1, file2, tree_name, branches_to_check=None):
    """
    Branch-by-branch comparison of one tree in two files.

    Returns a dict branch -> True if identical. Branches present in only one
    file compare as False.
    """
    with uproot.open(file1) as f1, uproot.open(file2) as f2:
        t1 = f1[tree_name]
        t2 = f2[tree_name]
        branches = branches_to_check or sorted(set(t1.keys()) | set(t2.keys()))

        logger.info("Comparing '%s' between:", tree_name)
        logger.info("  File 1: %s (%d entries)", file1, t1.num_entries)
        logger.info("  File 2: %s (%d entries)", file2, t2.num_entries)

        results = {}
        for branch in branches:
            if branch not in t1.keys() or branch not in t2.keys():
                logger.warning("  Branch '%s' missing from one file", branch)
                results[branch] = False
                continue
            v1 = t1[branch].array(library="np")
            v2 = t2[branch].array(library="np")
            results[branch] = _same(v1, v2)
            logger.info("  Branch '%s': %s", branch, "MATCH" if results[branch] else "DIFFER")

    return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Compare a tree between two ROOT files branch by branch.")
    parser.add_argument("file1", type=str)
    parser.add_argument("file2", type=str)
    parser.add_argument("--tree", type=str, default="QVectorTuple")
    parser.add_argument("--branches", type=str, nargs="*", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    results = compare_trees(args.file1, args.file2, args.tree, args.branches)
    n_diff = sum(not ok for ok in results.values())
    logger.info("%d of %d branches differ", n_diff, len(results))
    raise SystemExit(1 if n_diff else 0)

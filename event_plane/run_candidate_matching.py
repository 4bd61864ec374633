"""
Stage 3: match Lambda candidates to calibrated event planes by (run, event).
"""

import argparse
import logging
import os
import time
from collections import Counter

import numpy as np

from event_plane.ep_constants import CANDIDATE_TREE_PATH, EVENT_PLANE_TREE, MATCHED_TREE
from event_plane.filters.candidate_selection import CANDIDATE_CUTS, apply_candidate_cuts
from event_plane.utils.event_index import EventIndex
from event_plane.utils.io_helpers import read_tree_arrays, iterate_tree, first_entries, TreeAppender

logger = logging.getLogger(__name__)

EVENT_BRANCHES = ["RUNNUMBER", "EVENTNUMBER", "GPSTIME", "PVX", "PVY", "PVZ",
                  "nPVs", "nBackTracks", "nVeloTracks", "nEcalClusters"]
L0_FIELDS = ["ID", "ETA", "PHI", "MASS", "PT", "PX", "PY", "PZ",
             "BPVIPCHI2", "BPVFDCHI2", "BPVDIRA", "BPVX", "BPVY", "BPVZ"]
DAUGHTER_FIELDS = ["ID", "ETA", "PHI", "MASS", "PT", "PX", "PY", "PZ", "BPVIPCHI2", "GHOSTPROB"]

CANDIDATE_BRANCHES = (
    EVENT_BRANCHES
    + [f"L0_{f}" for f in L0_FIELDS]
    + [f"p_{f}" for f in DAUGHTER_FIELDS]
    + [f"pi_{f}" for f in DAUGHTER_FIELDS]
)
EP_FIELDS = ["Psi1Full", "Psi2Full", "PsiBack", "PsiFor", "r1", "r2", "centBin"]

PROGRESS_EVERY = 100000


def candidate_input_path(input_dir, file_nr):
    return os.path.join(input_dir, f"pbpb_{file_nr}.root")


def matched_output_path(output_dir, file_nr):
    return os.path.join(output_dir, f"LambdaFile_newPhiEP_{file_nr}.root")


class MatchSummary:
    """Cut-flow accounting for one candidate file."""

    def __init__(self):
        self.total = 0
        self.failed_cuts = 0
        self.no_match = 0
        self.saved = 0
        self.cut_counts = Counter()
        self.runs = set()

    def log(self, file_nr=None):
        logger.info("Summary for fileNr %s:", file_nr)
        logger.info("  Total Lambdas:      %d", self.total)
        logger.info("  Failed cuts:        %d", self.failed_cuts)
        logger.info("  No EP match:        %d", self.no_match)
        logger.info("  Successfully saved: %d", self.saved)
        logger.info("  Cut breakdown:")
        for name, label, _ in CANDIDATE_CUTS:
            logger.info("    %-22s : %d", label, self.cut_counts[name])
        logger.info("RUN numbers present in this file: %s", sorted(self.runs))


def load_event_plane_table(ep_file):
    table = read_tree_arrays(ep_file, EVENT_PLANE_TREE, ["RUNNUMBER", "EVENTNUMBER"] + EP_FIELDS)
    index = EventIndex(table["RUNNUMBER"], table["EVENTNUMBER"])
    return table, index


def prepare_candidates(chunk):
    """Flat per-candidate columns; primary-vertex arrays reduced to the first vertex."""
    candidates = {name: np.asarray(chunk[name]) for name in CANDIDATE_BRANCHES}
    for name in ("PVX", "PVY", "PVZ"):
        candidates[name] = first_entries(chunk[name])
    return candidates


def match_candidates(chunk, ep_table, ep_index, summary):
    """
    Applies the candidate cuts to a chunk and joins survivors with their
    event-plane record. Returns the output columns for the chunk.
    """
    candidates = prepare_candidates(chunk)
    passed = apply_candidate_cuts(candidates, summary.cut_counts)

    n = len(passed)
    summary.total += n
    summary.failed_cuts += int((~passed).sum())
    summary.runs.update(int(run) for run in np.unique(candidates["RUNNUMBER"]))

    rows = np.full(n, -1, dtype=np.int64)
    for i in np.flatnonzero(passed):
        row = ep_index.lookup(candidates["RUNNUMBER"][i], candidates["EVENTNUMBER"][i])
        if row is None:
            summary.no_match += 1
            logger.debug("No EP match for RUN %d EVENT %d nBackTracks %d nVeloTracks %d",
                         candidates["RUNNUMBER"][i], candidates["EVENTNUMBER"][i],
                         candidates["nBackTracks"][i], candidates["nVeloTracks"][i])
            continue
        rows[i] = row

    matched = rows >= 0
    summary.saved += int(matched.sum())

    out = {name: values[matched] for name, values in candidates.items()}
    for field in EP_FIELDS:
        out[f"EP_{field}"] = np.asarray(ep_table[field])[rows[matched]]
    return out


def run_matching(file_nr, input_dir, ep_file, output_dir, step_size=PROGRESS_EVERY):
    total_start = time.perf_counter()
    input_file = candidate_input_path(input_dir, file_nr)
    output_file = matched_output_path(output_dir, file_nr)

    ep_table, ep_index = load_event_plane_table(ep_file)
    chunks = iterate_tree(input_file, CANDIDATE_TREE_PATH, CANDIDATE_BRANCHES, step_size=step_size)

    summary = MatchSummary()
    with TreeAppender(output_file, MATCHED_TREE) as appender:
        for chunk in chunks:
            appender.extend(match_candidates(chunk, ep_table, ep_index, summary))
            logger.info("Processed %d candidates", summary.total)
        if appender.tree is None:
            logger.warning("No candidates in %s; output holds no tree", input_file)

    summary.log(file_nr)
    logger.info("--- Timing Summary ---")
    logger.info("Total runtime: %.2f s", time.perf_counter() - total_start)
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Match Lambda candidates with calibrated event planes.")
    parser.add_argument("--file_index", type=int, required=True,
                        help="Candidate file number: reads pbpb_<i>.root, writes LambdaFile_newPhiEP_<i>.root")
    parser.add_argument("--input_dir", type=str, required=True, help="Directory holding the candidate files")
    parser.add_argument("--ep_file", type=str, required=True, help="Calibrated event-plane ROOT file (stage 2 output)")
    parser.add_argument("--output_dir", type=str, required=True, help="Directory for the matched output")
    parser.add_argument("--log_level", type=str, default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")

    run_matching(args.file_index, args.input_dir, args.ep_file, args.output_dir)


if __name__ == "__main__":
    main()

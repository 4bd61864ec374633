"""
Stage 1: accumulate per-event Q-vectors from VELO tracks.
"""

import argparse
import logging
import time
from collections import Counter

import numpy as np

from event_plane.ep_constants import (
    N_HARMONICS, N_FORWARD_REGIONS, BACKWARD_ETA_MAX, FORWARD_ETA_EDGES,
    MIN_REGION_MULTIPLICITY, EVENT_TUPLE_PATH, QVECTOR_TREE,
    AP_RUN_PREFIX, AP_SEQ_MIN, AP_SEQ_MAX,
)
from event_plane.filters.event_selection import accept_event
from event_plane.filters.track_selection import remove_displaced_tracks, flip_backward_tracks
from event_plane.utils.io_helpers import get_filtered_root_files, read_tree_arrays, TreeAppender

logger = logging.getLogger(__name__)

INPUT_BRANCHES = [
    "GPSTIME", "EVENTNUMBER", "RUNNUMBER", "PVX", "PVY", "PVZ",
    "nBackTracks", "nPVs", "nVeloClusters", "nVeloTracks", "nEcalClusters",
    "ECalETot", "nLongTracks", "nVPClusters",
    "VELOTRACK_BIPCHI2", "VELOTRACK_ETA", "VELOTRACK_ISBACKWARD", "VELOTRACK_PHI",
]

# (output branch, dtype, per-event shape)
OUTPUT_SCHEMA = [
    ("outGPSTIME",       np.uint64,  ()),
    ("outEVENTNUMBER",   np.uint64,  ()),
    ("outRUNNUMBER",     np.uint32,  ()),
    ("outPVX",           np.float32, ()),
    ("outPVY",           np.float32, ()),
    ("outPVZ",           np.float32, ()),
    ("outnBackTracks",   np.int32,   ()),
    ("outnVeloClusters", np.int32,   ()),
    ("outnVeloTracks",   np.int32,   ()),
    ("outnEcalClusters", np.int32,   ()),
    ("outECalETot",      np.int32,   ()),
    ("outnLongTracks",   np.int32,   ()),
    ("outnVPClusters",   np.int32,   ()),
    ("outQx_back",       np.float64, (N_HARMONICS,)),
    ("outQy_back",       np.float64, (N_HARMONICS,)),
    ("outQx_for",        np.float64, (N_HARMONICS, N_FORWARD_REGIONS)),
    ("outQy_for",        np.float64, (N_HARMONICS, N_FORWARD_REGIONS)),
    ("outQx_back_wEta",  np.float64, (N_HARMONICS,)),
    ("outQy_back_wEta",  np.float64, (N_HARMONICS,)),
    ("outQx_for_wEta",   np.float64, (N_HARMONICS, N_FORWARD_REGIONS)),
    ("outQy_for_wEta",   np.float64, (N_HARMONICS, N_FORWARD_REGIONS)),
    ("out_Qmulti",       np.int32,   (N_FORWARD_REGIONS,)),
]

# input branch -> output branch for carried-through event fields
CARRIED_FIELDS = {
    "GPSTIME": "outGPSTIME",
    "EVENTNUMBER": "outEVENTNUMBER",
    "RUNNUMBER": "outRUNNUMBER",
    "nBackTracks": "outnBackTracks",
    "nVeloClusters": "outnVeloClusters",
    "nVeloTracks": "outnVeloTracks",
    "nEcalClusters": "outnEcalClusters",
    "ECalETot": "outECalETot",
    "nLongTracks": "outnLongTracks",
    "nVPClusters": "outnVPClusters",
}


def region_masks(eta):
    """
    Returns (backward mask, [bin1, bin2, bin3, inclusive] forward masks).
    The inclusive forward region overlaps the three bins.
    """
    e0, e1, e2, e3 = FORWARD_ETA_EDGES
    backward = eta < BACKWARD_ETA_MAX
    forward = [
        (eta > e0) & (eta <= e1),
        (eta > e1) & (eta <= e2),
        (eta > e2) & (eta <= e3),
        (eta > e0) & (eta <= e3),
    ]
    return backward, forward


def accumulate_qvectors(eta, phi, is_backward=None):
    """
    Sums unit vectors at n*phi (n = 1, 2) per region for tracks that already
    passed the track cut and the backward flip. The eta-weighted sums are only
    filled for n = 1; the n = 2 slots stay zero. No normalization.

    The backward multiplicity counts tracks flagged backward when is_backward
    is given, otherwise tracks in the backward eta region.
    """
    eta = np.asarray(eta, dtype=np.float64)
    phi = np.asarray(phi, dtype=np.float64)
    backward, forward = region_masks(eta)

    q = {
        "Qx_back": np.zeros(N_HARMONICS), "Qy_back": np.zeros(N_HARMONICS),
        "Qx_for": np.zeros((N_HARMONICS, N_FORWARD_REGIONS)),
        "Qy_for": np.zeros((N_HARMONICS, N_FORWARD_REGIONS)),
        "Qx_back_wEta": np.zeros(N_HARMONICS), "Qy_back_wEta": np.zeros(N_HARMONICS),
        "Qx_for_wEta": np.zeros((N_HARMONICS, N_FORWARD_REGIONS)),
        "Qy_for_wEta": np.zeros((N_HARMONICS, N_FORWARD_REGIONS)),
    }

    for i_n in range(N_HARMONICS):
        n = i_n + 1
        cos_n = np.cos(n * phi)
        sin_n = np.sin(n * phi)

        q["Qx_back"][i_n] = cos_n[backward].sum()
        q["Qy_back"][i_n] = sin_n[backward].sum()
        for j, mask in enumerate(forward):
            q["Qx_for"][i_n, j] = cos_n[mask].sum()
            q["Qy_for"][i_n, j] = sin_n[mask].sum()

        if n == 1:
            q["Qx_back_wEta"][i_n] = (eta * cos_n)[backward].sum()
            q["Qy_back_wEta"][i_n] = (eta * sin_n)[backward].sum()
            for j, mask in enumerate(forward):
                q["Qx_for_wEta"][i_n, j] = (eta * cos_n)[mask].sum()
                q["Qy_for_wEta"][i_n, j] = (eta * sin_n)[mask].sum()

    n_backward = backward.sum() if is_backward is None else (np.asarray(is_backward) == 1).sum()
    q["Qmulti"] = np.array(
        [forward[0].sum(), forward[1].sum(), forward[2].sum(), n_backward],
        dtype=np.int32,
    )
    return q


def extract_event_qvectors(bipchi2, eta, phi, is_backward):
    """Track cut, backward flip, then Q-vector accumulation for one event."""
    keep_idx = np.arange(len(eta))
    keep_idx = remove_displaced_tracks(bipchi2, keep_idx)

    eta = np.asarray(eta, dtype=np.float64)[keep_idx]
    phi = np.asarray(phi, dtype=np.float64)[keep_idx]
    is_backward = np.asarray(is_backward)[keep_idx]

    eta, phi = flip_backward_tracks(eta, phi, is_backward)
    return accumulate_qvectors(eta, phi, is_backward)


def passes_region_multiplicity(qmulti):
    return bool(np.all(np.asarray(qmulti) >= MIN_REGION_MULTIPLICITY))


def extract_events(arrays, counts=None):
    """
    Yields one output record (dict keyed by output branch) per event of an
    input tree that passes the event cuts and the region multiplicity cuts.
    """
    if counts is None:
        counts = Counter()

    n_events = len(arrays["nPVs"])
    for i in range(n_events):
        counts["events_read"] += 1

        pvz = arrays["PVZ"][i]
        pv_z = float(pvz[0]) if len(pvz) else None
        if not accept_event(int(arrays["nPVs"][i]), int(arrays["nBackTracks"][i]),
                            pv_z, int(arrays["nVeloTracks"][i])):
            counts["failed_event_cuts"] += 1
            continue

        q = extract_event_qvectors(
            arrays["VELOTRACK_BIPCHI2"][i],
            arrays["VELOTRACK_ETA"][i],
            arrays["VELOTRACK_PHI"][i],
            arrays["VELOTRACK_ISBACKWARD"][i],
        )
        if not passes_region_multiplicity(q["Qmulti"]):
            counts["failed_multiplicity_cuts"] += 1
            continue

        record = {out: arrays[src][i] for src, out in CARRIED_FIELDS.items()}
        record["outPVX"] = arrays["PVX"][i][0]
        record["outPVY"] = arrays["PVY"][i][0]
        record["outPVZ"] = pv_z
        record["out_Qmulti"] = q.pop("Qmulti")
        for key, value in q.items():
            record["out" + key] = value

        counts["events_saved"] += 1
        yield record


def records_to_columns(records):
    """Stacks output records into typed columns following OUTPUT_SCHEMA."""
    columns = {}
    for name, dtype, shape in OUTPUT_SCHEMA:
        if records:
            columns[name] = np.array([r[name] for r in records], dtype=dtype)
        else:
            columns[name] = np.zeros((0,) + shape, dtype=dtype)
    return columns


def run_extraction(input_files, output_file):
    """
    Reads every input file, extracts Q-vectors, and appends each file's
    surviving events to the Q-vector tree. Unreadable files are skipped.
    """
    total_start = time.perf_counter()
    counts = Counter()
    extract_time = 0.0

    with TreeAppender(output_file, QVECTOR_TREE) as appender:
        for file_name in input_files:
            try:
                arrays = read_tree_arrays(file_name, EVENT_TUPLE_PATH, INPUT_BRANCHES)
            except RuntimeError as e:
                logger.warning("%s; skipping", e)
                counts["files_skipped"] += 1
                continue
            logger.info("file: %s opened", file_name)

            extract_start = time.perf_counter()
            columns = records_to_columns(list(extract_events(arrays, counts)))
            extract_time += time.perf_counter() - extract_start
            appender.extend(columns)

        if appender.tree is None:
            appender.extend(records_to_columns([]))
    total_end = time.perf_counter()

    logger.info("Files read:               %d", len(input_files) - counts["files_skipped"])
    logger.info("Files skipped:            %d", counts["files_skipped"])
    logger.info("Events read:              %d", counts["events_read"])
    logger.info("Failed event cuts:        %d", counts["failed_event_cuts"])
    logger.info("Failed multiplicity cuts: %d", counts["failed_multiplicity_cuts"])
    logger.info("Events saved:             %d", counts["events_saved"])
    logger.info("--- Timing Summary ---")
    logger.info("Extraction time: %.2f s", extract_time)
    logger.info("Total runtime:   %.2f s", total_end - total_start)
    return counts


def main(argv=None):
    parser = argparse.ArgumentParser(description="Accumulate event-plane Q-vectors from VELO tracks.")
    parser.add_argument("--input_dir", type=str, required=True,
                        help="Directory holding the AP tuple files")
    parser.add_argument("--output_file", type=str, required=True,
                        help="Output ROOT file for the Q-vector tree")
    parser.add_argument("--run_prefix", type=str, default=AP_RUN_PREFIX)
    parser.add_argument("--seq_min", type=int, default=AP_SEQ_MIN)
    parser.add_argument("--seq_max", type=int, default=AP_SEQ_MAX)
    parser.add_argument("--log_level", type=str, default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")

    input_files = get_filtered_root_files(args.input_dir, run_prefix=args.run_prefix,
                                          seq_min=args.seq_min, seq_max=args.seq_max)
    run_extraction(input_files, args.output_file)


if __name__ == "__main__":
    main()

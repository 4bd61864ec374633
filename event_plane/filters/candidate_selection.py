# filters/candidate_selection.py
import numpy as np
from collections import Counter
from event_plane.ep_constants import (
    MIN_BACK_TRACKS, MIN_VELO_TRACKS, N_PVS_REQUIRED,
    MIN_L0_BPVFDCHI2, MIN_L0_BPVDIRA,
    MIN_P_BPVIPCHI2, MIN_PI_BPVIPCHI2,
    MIN_P_PT, MIN_PI_PT, MAX_GHOSTPROB,
)
from event_plane.filters.event_selection import pvz_in_fiducial

# Ordered cut list: (name, summary label, rejection mask).
# Every entry is evaluated on every candidate so each counter is an
# independent tally.
CANDIDATE_CUTS = [
    ("nBackTracks",  "nBackTracks < 10",    lambda c: c["nBackTracks"] < MIN_BACK_TRACKS),
    ("nVeloTracks",  "nVeloTracks < 15",    lambda c: c["nVeloTracks"] < MIN_VELO_TRACKS),
    ("nPVs",         "nPVs != 1",           lambda c: c["nPVs"] != N_PVS_REQUIRED),
    ("PVZ",          "|PVZ| > 100",         lambda c: ~pvz_in_fiducial(c["PVZ"])),
    ("L0_BPVFDCHI2", "L0_BPVFDCHI2 < 130",  lambda c: c["L0_BPVFDCHI2"] < MIN_L0_BPVFDCHI2),
    ("L0_BPVDIRA",   "L0_BPVDIRA < 0.9999", lambda c: c["L0_BPVDIRA"] < MIN_L0_BPVDIRA),
    ("p_BPVIPCHI2",  "p_BPVIPCHI2 < 25",    lambda c: c["p_BPVIPCHI2"] < MIN_P_BPVIPCHI2),
    ("pi_BPVIPCHI2", "pi_BPVIPCHI2 < 25",   lambda c: c["pi_BPVIPCHI2"] < MIN_PI_BPVIPCHI2),
    ("p_PT",         "p_PT < 500",          lambda c: c["p_PT"] < MIN_P_PT),
    ("pi_PT",        "pi_PT < 200",         lambda c: c["pi_PT"] < MIN_PI_PT),
    ("p_GHOSTPROB",  "p_GHOSTPROB > 0.1",   lambda c: c["p_GHOSTPROB"] > MAX_GHOSTPROB),
    ("pi_GHOSTPROB", "pi_GHOSTPROB > 0.1",  lambda c: c["pi_GHOSTPROB"] > MAX_GHOSTPROB),
]

CUT_LABELS = {name: label for name, label, _ in CANDIDATE_CUTS}


def apply_candidate_cuts(candidates, cut_counts=None):
    """
    Evaluates every candidate cut on a chunk of candidates.

    Args:
        candidates (dict[str, np.ndarray]): flat per-candidate columns; "PVZ"
            must already be reduced to the first primary vertex
        cut_counts (Counter): per-cut rejection tally, updated in place

    Returns:
        np.ndarray[bool]: True for candidates passing all cuts
    """
    if cut_counts is None:
        cut_counts = Counter()

    n = len(candidates["nPVs"])
    failed = np.zeros(n, dtype=bool)
    for name, _, reject in CANDIDATE_CUTS:
        mask = np.asarray(reject(candidates), dtype=bool)
        cut_counts[name] += int(mask.sum())
        failed |= mask

    return ~failed

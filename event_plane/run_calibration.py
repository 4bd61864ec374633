"""
Stage 2: recenter and flatten event-plane angles, estimate the resolution.
"""

import argparse
import logging
import time

import numpy as np

from event_plane.calib.calib_service import CalibrationService, event_plane_angles
from event_plane.ep_constants import (
    CALIB_REGIONS, BACK_REGION, FULL_REGION, N_FORWARD_REGIONS, N_HARMONICS,
    N_PSI_HIST_BINS, Q1_VARIANTS, DIRECTED_FLOW_SIGN, QVECTOR_TREE, EVENT_PLANE_TREE,
)
from event_plane.utils.event_index import EventIndex
from event_plane.utils.io_helpers import read_tree_arrays, write_tree

logger = logging.getLogger(__name__)

INPUT_BRANCHES = [
    "outRUNNUMBER", "outEVENTNUMBER", "outnVeloTracks",
    "outQx_back", "outQy_back", "outQx_for", "outQy_for",
    "outQx_back_wEta", "outQy_back_wEta", "outQx_for_wEta", "outQy_for_wEta",
    "out_Qmulti",
]


def check_configuration(ep_region, q1_variant):
    if not 0 <= ep_region < N_FORWARD_REGIONS:
        raise ValueError(f"ep_region must select a forward region 0-{N_FORWARD_REGIONS - 1} "
                         f"{CALIB_REGIONS[:N_FORWARD_REGIONS]}, got {ep_region}")
    if q1_variant not in Q1_VARIANTS:
        raise ValueError(f"q1_variant must be one of {Q1_VARIANTS}, got '{q1_variant}'")


def build_region_qvectors(table, ep_region, q1_variant):
    """
    Q-vectors per [event, region, harmonic] in CALIB_REGIONS order, plus the
    per-harmonic sign used to combine the backward sub-event with the
    forward one.

    Unweighted sums are used as stored. The eta-weighted harmonic-1 sums are
    divided by the region track count.
    """
    check_configuration(ep_region, q1_variant)

    n_events = len(table["outRUNNUMBER"])
    qx = np.zeros((n_events, len(CALIB_REGIONS), N_HARMONICS))
    qy = np.zeros_like(qx)

    qx[:, :N_FORWARD_REGIONS, :] = np.transpose(table["outQx_for"], (0, 2, 1))
    qy[:, :N_FORWARD_REGIONS, :] = np.transpose(table["outQy_for"], (0, 2, 1))
    qx[:, BACK_REGION, :] = table["outQx_back"]
    qy[:, BACK_REGION, :] = table["outQy_back"]

    if q1_variant == "eta_weighted":
        multi = np.asarray(table["out_Qmulti"], dtype=np.float64)
        counts = np.column_stack([multi[:, 0], multi[:, 1], multi[:, 2],
                                  multi[:, :3].sum(axis=1), multi[:, 3]])
        wx = np.column_stack([table["outQx_for_wEta"][:, 0, :], table["outQx_back_wEta"][:, 0]])
        wy = np.column_stack([table["outQy_for_wEta"][:, 0, :], table["outQy_back_wEta"][:, 0]])
        qx[:, :FULL_REGION, 0] = np.divide(wx, counts, out=np.zeros_like(wx), where=counts > 0)
        qy[:, :FULL_REGION, 0] = np.divide(wy, counts, out=np.zeros_like(wy), where=counts > 0)

    signs = np.array([DIRECTED_FLOW_SIGN[q1_variant]] + [1.0] * (N_HARMONICS - 1))
    qx[:, FULL_REGION, :] = qx[:, ep_region, :] + signs * qx[:, BACK_REGION, :]
    qy[:, FULL_REGION, :] = qy[:, ep_region, :] + signs * qy[:, BACK_REGION, :]
    return qx, qy, signs


def fill_psi_histograms(histograms, stage, cent, psi, n_cent_bins):
    for c in range(n_cent_bins):
        sel = cent == c
        for r, region in enumerate(CALIB_REGIONS):
            for h in range(N_HARMONICS):
                n = h + 1
                histograms[f"hPsi_{stage}_c{c}_{region}_n{n}"] = np.histogram(
                    psi[sel, r, h], bins=N_PSI_HIST_BINS, range=(-np.pi / n, np.pi / n)
                )


def calibrate_event_planes(table, centrality_edges, ep_region, q1_variant, calib=None):
    """
    Runs the three calibration passes over a full Q-vector table.

    If calib is given, its stored constants are applied instead of being
    derived from this table.

    Returns (output columns, CalibrationService, QA histograms).
    """
    qx, qy, signs = build_region_qvectors(table, ep_region, q1_variant)
    derive = calib is None
    if derive:
        calib = CalibrationService(centrality_edges)
    elif not np.array_equal(calib.edges, np.asarray(centrality_edges, dtype=np.float64)):
        raise RuntimeError(f"Calibration constants were derived for centrality edges {calib.edges.tolist()}, "
                           f"but {list(centrality_edges)} were requested")

    histograms = {}
    cent = calib.centrality_bin(table["outnVeloTracks"])

    # Pass 1: binning and mean Q-vectors
    fill_psi_histograms(histograms, "raw", cent, event_plane_angles(qx, qy), calib.n_bins)
    if derive:
        calib.compute_recentering(cent, qx, qy)

    # Pass 2: recentering
    qx_c, qy_c = calib.recenter(cent, qx, qy)
    psi_rec = event_plane_angles(qx_c, qy_c)
    fill_psi_histograms(histograms, "rec", cent, psi_rec, calib.n_bins)
    if derive:
        calib.compute_flattening(cent, psi_rec)

    # Pass 3: flattening and resolution
    psi_flat = calib.flatten(cent, psi_rec)
    fill_psi_histograms(histograms, "flat", cent, psi_flat, calib.n_bins)
    if derive:
        calib.compute_resolution(cent, psi_flat[:, ep_region, :], psi_flat[:, BACK_REGION, :], signs)
    resolution = calib.resolution_for(cent)

    columns = {
        "RUNNUMBER": np.asarray(table["outRUNNUMBER"], dtype=np.uint32),
        "EVENTNUMBER": np.asarray(table["outEVENTNUMBER"], dtype=np.uint64),
        "Psi1Full": psi_flat[:, FULL_REGION, 0],
        "Psi2Full": psi_flat[:, FULL_REGION, 1],
        "PsiBack": psi_flat[:, BACK_REGION, :],
        "PsiFor": psi_flat[:, ep_region, :],
        "r1": resolution[:, 0],
        "r2": resolution[:, 1],
        "centBin": cent.astype(np.int32),
    }
    return columns, calib, histograms


def run_calibration(input_file, output_file, centrality_edges, ep_region, q1_variant,
                    calib_in=None, calib_out=None):
    total_start = time.perf_counter()
    check_configuration(ep_region, q1_variant)

    table = read_tree_arrays(input_file, QVECTOR_TREE, INPUT_BRANCHES)
    n_events = len(table["outRUNNUMBER"])
    if n_events == 0:
        raise RuntimeError(f"Q-vector table in {input_file} is empty; nothing to calibrate")
    logger.info("Read %d Q-vector records from %s", n_events, input_file)

    index = EventIndex(table["outRUNNUMBER"], table["outEVENTNUMBER"])
    if index.n_duplicates:
        logger.warning("%d duplicate (run, event) keys in the Q-vector table", index.n_duplicates)

    calib = CalibrationService.load_calibration_from_tsv(calib_in) if calib_in else None
    columns, calib, histograms = calibrate_event_planes(table, centrality_edges, ep_region, q1_variant, calib)

    write_tree(output_file, EVENT_PLANE_TREE, columns, histograms)
    if calib_out:
        calib.dump_calibration(calib_out)

    for c in range(calib.n_bins):
        logger.info("Centrality bin %d [%g, %g]: r1 = %.4f, r2 = %.4f", c, calib.edges[c], calib.edges[c + 1],
                    calib.resolution[c, 0], calib.resolution[c, 1])
    logger.info("--- Timing Summary ---")
    logger.info("Total runtime: %.2f s", time.perf_counter() - total_start)
    return calib


def main(argv=None):
    parser = argparse.ArgumentParser(description="Calibrate event-plane angles from a Q-vector table.")
    parser.add_argument("--input_file", type=str, required=True, help="Q-vector ROOT file (stage 1 output)")
    parser.add_argument("--output_file", type=str, required=True, help="Calibrated event-plane ROOT file")
    parser.add_argument("--centrality_edges", type=float, nargs="+", required=True,
                        help="Ascending nVeloTracks bin edges, e.g. 14 126 270 2000")
    parser.add_argument("--ep_region", type=int, required=True,
                        help=f"Forward region used for PsiFor and the full event plane: "
                             f"{dict(enumerate(CALIB_REGIONS[:N_FORWARD_REGIONS]))}")
    parser.add_argument("--q1_variant", type=str, choices=Q1_VARIANTS, required=True,
                        help="Q-vector variant for the first harmonic")
    calib_group = parser.add_mutually_exclusive_group()
    calib_group.add_argument("--calib_in", type=str, default=None,
                             help="Apply stored calibration constants (TSV) instead of deriving them")
    calib_group.add_argument("--calib_out", type=str, default=None,
                             help="Write the derived calibration constants (TSV)")
    parser.add_argument("--log_level", type=str, default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")

    run_calibration(args.input_file, args.output_file, args.centrality_edges, args.ep_region,
                    args.q1_variant, calib_in=args.calib_in, calib_out=args.calib_out)


if __name__ == "__main__":
    main()

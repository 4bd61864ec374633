# calib/calib_service.py

import logging

import numpy as np
import pandas as pd

from event_plane.ep_constants import CALIB_REGIONS, N_HARMONICS, FLATTENING_ORDER

logger = logging.getLogger(__name__)

HARMONICS = np.arange(1, N_HARMONICS + 1)


def wrap_angle(psi, n):
    """Wraps psi into (-pi/n, pi/n] for harmonic n (broadcast over the last axis)."""
    return np.arctan2(np.sin(n * psi), np.cos(n * psi)) / n


def event_plane_angles(qx, qy):
    """Psi_n = atan2(Qy, Qx) / n, with the harmonic on the last axis."""
    return np.arctan2(qy, qx) / HARMONICS


class CalibrationService:
    """
    Recentering, flattening and resolution constants per
    (centrality bin, region, harmonic).

    Array layout: [cent_bin, region, harmonic(, k)]; resolution is
    [cent_bin, harmonic].
    """

    def __init__(self, centrality_edges, flattening_order=FLATTENING_ORDER):
        edges = np.asarray(centrality_edges, dtype=np.float64)
        if edges.ndim != 1 or len(edges) < 2 or np.any(np.diff(edges) <= 0):
            raise ValueError(f"Centrality edges must be a strictly ascending list of at least two values, got {list(centrality_edges)}")

        self.edges = edges
        self.n_bins = len(edges) - 1
        self.n_regions = len(CALIB_REGIONS)
        self.flattening_order = flattening_order

        shape = (self.n_bins, self.n_regions, N_HARMONICS)
        self.n_entries = np.zeros(shape, dtype=np.int64)
        self.mean_qx = np.zeros(shape)
        self.mean_qy = np.zeros(shape)
        self.flat_cos = np.zeros(shape + (flattening_order,))
        self.flat_sin = np.zeros(shape + (flattening_order,))
        self.resolution = np.full((self.n_bins, N_HARMONICS), np.nan)

    # ---------------------------------------------------------------
    # Centrality binning
    # ---------------------------------------------------------------
    def centrality_bin(self, n_velo_tracks):
        """
        Bins are [e_i, e_i+1) with the last bin closed. Values outside the
        edges are clipped into the first/last bin.
        """
        x = np.asarray(n_velo_tracks, dtype=np.float64)
        bins = np.searchsorted(self.edges, x, side="right") - 1
        bins[x == self.edges[-1]] = self.n_bins - 1

        outside = (bins < 0) | (bins >= self.n_bins)
        if outside.any():
            logger.warning("%d events outside centrality edges %s; clipped into the edge bins",
                           int(outside.sum()), self.edges.tolist())
        return np.clip(bins, 0, self.n_bins - 1)

    # ---------------------------------------------------------------
    # Pass 1: recentering constants
    # ---------------------------------------------------------------
    def compute_recentering(self, cent, qx, qy):
        for c in range(self.n_bins):
            sel = cent == c
            n_sel = int(sel.sum())
            self.n_entries[c] = n_sel
            if n_sel == 0:
                logger.warning("Centrality bin %d [%g, %g) is empty; no recentering", c, self.edges[c], self.edges[c + 1])
                self.mean_qx[c] = 0.0
                self.mean_qy[c] = 0.0
                continue
            self.mean_qx[c] = qx[sel].mean(axis=0)
            self.mean_qy[c] = qy[sel].mean(axis=0)

    def recenter(self, cent, qx, qy):
        return qx - self.mean_qx[cent], qy - self.mean_qy[cent]

    # ---------------------------------------------------------------
    # Pass 2: flattening coefficients
    # ---------------------------------------------------------------
    def _harmonic_args(self, psi):
        k = np.arange(1, self.flattening_order + 1)
        return psi[..., None] * (HARMONICS[:, None] * k)

    def compute_flattening(self, cent, psi):
        args = self._harmonic_args(psi)
        cos_args = np.cos(args)
        sin_args = np.sin(args)
        for c in range(self.n_bins):
            sel = cent == c
            if not sel.any():
                self.flat_cos[c] = 0.0
                self.flat_sin[c] = 0.0
                continue
            self.flat_cos[c] = cos_args[sel].mean(axis=0)
            self.flat_sin[c] = sin_args[sel].mean(axis=0)

    # ---------------------------------------------------------------
    # Pass 3: flattening shift and resolution
    # ---------------------------------------------------------------
    def flatten(self, cent, psi):
        """
        n*dPsi = sum_k (2/k) * (-<sin(k n Psi)> cos(k n Psi) + <cos(k n Psi)> sin(k n Psi))
        """
        k = np.arange(1, self.flattening_order + 1)
        args = self._harmonic_args(psi)
        terms = (2.0 / k) * (-self.flat_sin[cent] * np.cos(args) + self.flat_cos[cent] * np.sin(args))
        delta = terms.sum(axis=-1) / HARMONICS
        return wrap_angle(psi + delta, HARMONICS)

    def compute_resolution(self, cent, psi_for, psi_back, signs):
        """
        r_n = sqrt(<s_n cos(n (Psi_for - Psi_back))>) per centrality bin.
        psi_for, psi_back: [event, harmonic]; signs: [harmonic].
        """
        signs = np.asarray(signs, dtype=np.float64)
        for c in range(self.n_bins):
            sel = cent == c
            if not sel.any():
                logger.warning("Centrality bin %d is empty; resolution undefined", c)
                self.resolution[c] = np.nan
                continue
            corr = np.mean(signs * np.cos(HARMONICS * (psi_for[sel] - psi_back[sel])), axis=0)
            for h, value in enumerate(corr):
                if value > 0:
                    self.resolution[c, h] = np.sqrt(value)
                else:
                    logger.warning("Centrality bin %d, n=%d: sub-event correlation %.4g <= 0; resolution undefined",
                                   c, h + 1, value)
                    self.resolution[c, h] = np.nan

    def resolution_for(self, cent):
        return self.resolution[cent]

    # ---------------------------------------------------------------
    # Persistence
    # ---------------------------------------------------------------
    def dump_calibration(self, output_path):
        rows = []
        for c in range(self.n_bins):
            for r, region in enumerate(CALIB_REGIONS):
                for h in range(N_HARMONICS):
                    row = {
                        "cent_bin": c,
                        "cent_lo": self.edges[c],
                        "cent_hi": self.edges[c + 1],
                        "region": region,
                        "harmonic": h + 1,
                        "n_entries": self.n_entries[c, r, h],
                        "mean_qx": self.mean_qx[c, r, h],
                        "mean_qy": self.mean_qy[c, r, h],
                    }
                    for k in range(self.flattening_order):
                        row[f"flat_cos_{k + 1}"] = self.flat_cos[c, r, h, k]
                    for k in range(self.flattening_order):
                        row[f"flat_sin_{k + 1}"] = self.flat_sin[c, r, h, k]
                    row["resolution"] = self.resolution[c, h]
                    rows.append(row)

        df = pd.DataFrame(rows)
        df.to_csv(output_path, sep="\t", index=False, float_format="%.17g")
        logger.info("Calibration constants dumped to %s", output_path)

    @classmethod
    def load_calibration_from_tsv(cls, tsv_path):
        try:
            df = pd.read_csv(tsv_path, sep="\t")
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise RuntimeError(f"Could not read calibration constants from {tsv_path}: {e}") from e

        required = ["cent_bin", "cent_lo", "cent_hi", "region", "harmonic",
                    "n_entries", "mean_qx", "mean_qy", "resolution"]
        missing = [col for col in required if col not in df.columns]
        if missing:
            raise RuntimeError(f"Calibration file {tsv_path} is missing columns {missing}")

        order = sum(1 for col in df.columns if col.startswith("flat_cos_"))
        bins = df.drop_duplicates("cent_bin").sort_values("cent_bin")
        edges = list(bins["cent_lo"]) + [bins["cent_hi"].iloc[-1]]
        calib = cls(edges, flattening_order=order)

        expected_rows = calib.n_bins * calib.n_regions * N_HARMONICS
        if len(df) != expected_rows or set(df["region"]) != set(CALIB_REGIONS):
            raise RuntimeError(f"Calibration file {tsv_path} has {len(df)} rows, expected {expected_rows} "
                               f"covering regions {CALIB_REGIONS}")

        for row in df.itertuples(index=False):
            c = int(row.cent_bin)
            r = CALIB_REGIONS.index(row.region)
            h = int(row.harmonic) - 1
            calib.n_entries[c, r, h] = row.n_entries
            calib.mean_qx[c, r, h] = row.mean_qx
            calib.mean_qy[c, r, h] = row.mean_qy
            for k in range(order):
                calib.flat_cos[c, r, h, k] = getattr(row, f"flat_cos_{k + 1}")
                calib.flat_sin[c, r, h, k] = getattr(row, f"flat_sin_{k + 1}")
            calib.resolution[c, h] = row.resolution

        logger.info("Loaded calibration constants for %d centrality bins from %s", calib.n_bins, tsv_path)
        return calib

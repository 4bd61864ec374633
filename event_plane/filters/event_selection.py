import numpy as np
from event_plane.ep_constants import (
    N_PVS_REQUIRED, MIN_BACK_TRACKS, PVZ_MIN, PVZ_MAX, MIN_VELO_TRACKS
)


# ==============================
# Core: Event-level quality cuts
# ==============================
def accept_event(n_pvs, n_back_tracks, pv_z, n_velo_tracks):
    """
    Applies the event-level admission cuts.

    Parameters:
    - n_pvs: number of reconstructed primary vertices
    - n_back_tracks: number of backward tracks (rejects beam-gas background)
    - pv_z: z of the first primary vertex, None or NaN if there is none
    - n_velo_tracks: number of VELO tracks

    Returns:
    - True if the event passes all cuts
    - False otherwise
    """
    if n_pvs != N_PVS_REQUIRED: return False
    if n_back_tracks < MIN_BACK_TRACKS: return False
    if pv_z is None or not (PVZ_MIN <= pv_z <= PVZ_MAX): return False
    if n_velo_tracks < MIN_VELO_TRACKS: return False

    return True


def pvz_in_fiducial(pv_z):
    """Vectorized fiducial-z check; NaN (no vertex) fails."""
    pv_z = np.asarray(pv_z, dtype=float)
    return (pv_z >= PVZ_MIN) & (pv_z <= PVZ_MAX)

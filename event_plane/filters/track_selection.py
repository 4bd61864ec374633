"""
Track-level filters applied inside an admitted event.
"""

import numpy as np
from event_plane.ep_constants import MAX_TRACK_BIPCHI2, TWO_PI


def remove_displaced_tracks(bipchi2, keep_idx):
    """
    Drops tracks whose impact-parameter chi2 exceeds the primary-track limit.

    Args:
        bipchi2 (array): impact-parameter chi2 per track
        keep_idx (array): indices to check
    Returns:
        array: updated keep_idx
    """
    keep_idx = np.asarray(keep_idx, dtype=np.int64)
    bipchi2 = np.asarray(bipchi2, dtype=float)
    return keep_idx[bipchi2[keep_idx] <= MAX_TRACK_BIPCHI2]


def flip_backward_tracks(eta, phi, is_backward):
    """
    Maps backward-flagged tracks onto the forward coordinate convention:
    eta -> -eta, phi -> (phi + pi) mod 2pi. Unflagged tracks are unchanged.

    Returns new (eta, phi) arrays; inputs are not modified.
    """
    eta = np.array(eta, dtype=float)
    phi = np.array(phi, dtype=float)
    back = np.asarray(is_backward) == 1

    eta[back] = -eta[back]
    phi[back] = np.mod(phi[back] + np.pi, TWO_PI)
    return eta, phi

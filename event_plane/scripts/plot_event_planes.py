import argparse
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import uproot

from event_plane.ep_constants import CALIB_REGIONS, N_HARMONICS

STAGES = [("raw", "Raw"), ("rec", "Recentered"), ("flat", "Flattened")]


def plot_event_planes(ep_file, output_folder="ep_plots"):
    """
    One figure per (centrality bin, region, harmonic) overlaying the Psi_n
    distribution after each calibration step.
    """
    os.makedirs(output_folder, exist_ok=True)
    saved = []

    with uproot.open(ep_file) as f:
        names = {key.split(";")[0] for key in f.keys()}
        cent_bins = sorted({int(name.split("_")[2][1:]) for name in names if name.startswith("hPsi_raw_")})

        for c in cent_bins:
            for region in CALIB_REGIONS:
                for n in range(1, N_HARMONICS + 1):
                    fig, ax = plt.subplots(figsize=(6, 4))
                    for stage, label in STAGES:
                        name = f"hPsi_{stage}_c{c}_{region}_n{n}"
                        if name not in names:
                            continue
                        counts, edges = f[name].to_numpy()
                        ax.stairs(counts, edges, label=label)

                    ax.set_xlabel(rf"$\Psi_{n}$ (rad)")
                    ax.set_ylabel("Events")
                    ax.set_xlim(-np.pi / n, np.pi / n)
                    ax.set_title(f"Centrality bin {c}, {region}, n={n}")
                    ax.legend()
                    ax.grid(True)

                    path = os.path.join(output_folder, f"psi_c{c}_{region}_n{n}.png")
                    fig.savefig(path, dpi=150)
                    plt.close(fig)
                    saved.append(path)

    print(f"Saved {len(saved)} plots to {output_folder}")
    return saved


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Plot event-plane angle distributions per calibration step.")
    parser.add_argument("ep_file", type=str, help="Calibrated event-plane ROOT file")
    parser.add_argument("--output_folder", type=str, default="ep_plots")
    args = parser.parse_args()
    plot_event_planes(args.ep_file, args.output_folder)

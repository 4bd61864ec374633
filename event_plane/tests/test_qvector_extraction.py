import logging
import math
import os
from collections import Counter

import awkward as ak
import numpy as np
import pytest
import uproot

from event_plane.run_qvector_extraction import (
    accumulate_qvectors, extract_event_qvectors, extract_events,
    records_to_columns, run_extraction, OUTPUT_SCHEMA,
)
from event_plane.scripts.compare_trees import compare_trees
from event_plane.ep_constants import EVENT_TUPLE_PATH, QVECTOR_TREE


def make_event(n_pvs=1, n_back_tracks=12, pv_z=0.0, n_velo_tracks=20, event_number=1, run_number=300000,
               eta=None, phi=None, is_backward=None, bipchi2=None):
    """
    Default event: 6 tracks in each forward bin and 6 backward-flagged
    tracks, all inside a narrow phi cone.
    """
    if eta is None:
        eta = [1.5] * 6 + [3.0] * 6 + [5.0] * 6 + [1.5] * 6
        phi = list(np.linspace(0.1, 0.6, 24))
        is_backward = [0.0] * 18 + [1.0] * 6
    if bipchi2 is None:
        bipchi2 = [0.0] * len(eta)
    return {
        "GPSTIME": 1000 + event_number, "EVENTNUMBER": event_number, "RUNNUMBER": run_number,
        "PVX": [0.1] * n_pvs, "PVY": [0.2] * n_pvs, "PVZ": [pv_z] * n_pvs,
        "nBackTracks": n_back_tracks, "nPVs": n_pvs, "nVeloClusters": 500, "nVeloTracks": n_velo_tracks,
        "nEcalClusters": 40, "ECalETot": 9000, "nLongTracks": 30, "nVPClusters": 700,
        "VELOTRACK_BIPCHI2": bipchi2, "VELOTRACK_ETA": eta,
        "VELOTRACK_ISBACKWARD": is_backward, "VELOTRACK_PHI": phi,
    }


JAGGED = ["PVX", "PVY", "PVZ", "VELOTRACK_BIPCHI2", "VELOTRACK_ETA", "VELOTRACK_ISBACKWARD", "VELOTRACK_PHI"]
SCALAR_TYPES = {
    "GPSTIME": np.uint64, "EVENTNUMBER": np.uint64, "RUNNUMBER": np.uint32,
    "nBackTracks": np.int32, "nPVs": np.int32, "nVeloClusters": np.int32, "nVeloTracks": np.int32,
    "nEcalClusters": np.int32, "ECalETot": np.int32, "nLongTracks": np.int32, "nVPClusters": np.int32,
}


def to_arrays(events):
    """In-memory equivalent of reading the event tuple with library='np'."""
    arrays = {}
    for name, dtype in SCALAR_TYPES.items():
        arrays[name] = np.array([e[name] for e in events], dtype=dtype)
    for name in JAGGED:
        column = np.empty(len(events), dtype=object)
        for i, e in enumerate(events):
            column[i] = np.asarray(e[name], dtype=np.float32)
        arrays[name] = column
    return arrays


def write_event_tuple(path, events):
    data = {name: np.array([e[name] for e in events], dtype=dtype) for name, dtype in SCALAR_TYPES.items()}
    for name in JAGGED:
        data[name] = ak.Array([[float(x) for x in e[name]] for e in events])
    with uproot.recreate(path) as f:
        f[EVENT_TUPLE_PATH] = data


def test_populated_event_saved_with_all_regions_filled():
    records = list(extract_events(to_arrays([make_event()])))
    assert len(records) == 1

    record = records[0]
    assert list(record["out_Qmulti"]) == [6, 6, 6, 6]
    for j in range(4):
        assert record["outQx_for"][0, j] != 0.0
        assert record["outQy_for"][0, j] != 0.0
    assert record["outQx_back"][0] != 0.0
    assert record["outQy_back"][0] != 0.0
    assert record["outnVeloTracks"] == 20
    assert record["outPVZ"] == pytest.approx(0.0)


def test_qvector_sums_match_track_sums():
    rng = np.random.default_rng(7)
    eta = rng.uniform(-5.0, 6.0, 200)
    phi = rng.uniform(0.0, 2 * np.pi, 200)

    q = accumulate_qvectors(eta, phi)

    for i_n, n in enumerate((1, 2)):
        back_x = math.fsum(math.cos(n * p) for e, p in zip(eta, phi) if e < -0.5)
        back_y = math.fsum(math.sin(n * p) for e, p in zip(eta, phi) if e < -0.5)
        assert q["Qx_back"][i_n] == pytest.approx(back_x, abs=1e-9)
        assert q["Qy_back"][i_n] == pytest.approx(back_y, abs=1e-9)

        for j, (lo, hi) in enumerate([(0.5, 2.5), (2.5, 4.0), (4.0, 6.0), (0.5, 6.0)]):
            fx = math.fsum(math.cos(n * p) for e, p in zip(eta, phi) if lo < e <= hi)
            fy = math.fsum(math.sin(n * p) for e, p in zip(eta, phi) if lo < e <= hi)
            assert q["Qx_for"][i_n, j] == pytest.approx(fx, abs=1e-9)
            assert q["Qy_for"][i_n, j] == pytest.approx(fy, abs=1e-9)


def test_eta_weighted_only_first_harmonic():
    eta = np.array([-1.0, -2.0, 1.0, 3.0, 5.0])
    phi = np.array([0.3, 1.2, 0.4, 2.0, 4.0])

    q = accumulate_qvectors(eta, phi)

    assert q["Qx_back_wEta"][0] == pytest.approx(-math.cos(0.3) - 2 * math.cos(1.2))
    assert q["Qy_for_wEta"][0, 3] == pytest.approx(math.sin(0.4) + 3 * math.sin(2.0) + 5 * math.sin(4.0))
    assert np.all(q["Qx_back_wEta"][1] == 0.0)
    assert np.all(q["Qy_back_wEta"][1] == 0.0)
    assert np.all(q["Qx_for_wEta"][1] == 0.0)
    assert np.all(q["Qy_for_wEta"][1] == 0.0)


def test_inclusive_region_overlaps_bins():
    eta = np.array([1.0, 3.0, 5.0, 5.5, 7.0, 0.2, -3.0])
    phi = np.zeros(7)

    q = accumulate_qvectors(eta, phi)

    assert list(q["Qmulti"]) == [1, 1, 2, 1]
    assert q["Qx_for"][0, 3] == pytest.approx(q["Qx_for"][0, :3].sum())


def test_bin_edges_are_upper_inclusive():
    q = accumulate_qvectors([0.5, 2.5, 4.0, 6.0, -0.5], np.zeros(5))
    # 0.5 and -0.5 fall in no region, 6.0 closes bin3
    assert list(q["Qmulti"]) == [1, 1, 1, 0]


def test_flip_applied_before_region_classification():
    # a flagged track at eta=+3 is binned as backward with phi shifted by pi
    q = extract_event_qvectors([0.0], [3.0], [0.25], [1.0])
    assert list(q["Qmulti"]) == [0, 0, 0, 1]
    assert q["Qx_back"][0] == pytest.approx(math.cos(0.25 + math.pi))
    assert q["Qx_back_wEta"][0] == pytest.approx(-3.0 * math.cos(0.25 + math.pi))


def test_displaced_tracks_do_not_contribute():
    q = extract_event_qvectors([0.0, 2.0], [1.5, 1.6], [0.1, 0.2], [0.0, 0.0])
    assert list(q["Qmulti"]) == [1, 0, 0, 0]
    assert q["Qx_for"][0, 0] == pytest.approx(math.cos(0.1))


@pytest.mark.parametrize("overrides", [
    {"n_pvs": 0}, {"n_pvs": 2}, {"n_velo_tracks": 14}, {"n_back_tracks": 9}, {"pv_z": 120.0},
])
def test_event_cuts_drop_events(overrides):
    counts = Counter()
    records = list(extract_events(to_arrays([make_event(**overrides)]), counts))
    assert records == []
    assert counts["failed_event_cuts"] == 1


def test_velo_track_count_15_is_kept():
    records = list(extract_events(to_arrays([make_event(n_velo_tracks=15)])))
    assert len(records) == 1


def test_low_region_multiplicity_drops_event():
    eta = [1.5] * 6 + [3.0] * 6 + [5.0] * 4 + [1.5] * 6
    event = make_event(eta=eta, phi=list(np.linspace(0.1, 0.6, 22)), is_backward=[0.0] * 16 + [1.0] * 6)
    counts = Counter()

    records = list(extract_events(to_arrays([event]), counts))

    assert records == []
    assert counts["failed_multiplicity_cuts"] == 1


def test_empty_output_columns_keep_shapes():
    columns = records_to_columns([])
    for name, dtype, shape in OUTPUT_SCHEMA:
        assert columns[name].shape == (0,) + shape
        assert columns[name].dtype == dtype


def test_run_extraction_is_reproducible(tmp_path):
    events = [make_event(event_number=i) for i in range(1, 4)] + [make_event(n_pvs=2, event_number=9)]
    input_file = str(tmp_path / "00274156_00000001_1.tuple_pbpb2024.root")
    write_event_tuple(input_file, events)

    out1 = str(tmp_path / "q1.root")
    out2 = str(tmp_path / "q2.root")
    counts = run_extraction([input_file], out1)
    run_extraction([input_file], out2)

    assert counts["events_read"] == 4
    assert counts["events_saved"] == 3
    results = compare_trees(out1, out2, QVECTOR_TREE)
    assert results and all(results.values())

    with uproot.open(out1) as f:
        table = f[QVECTOR_TREE].arrays(library="np")
    assert list(table["outEVENTNUMBER"]) == [1, 2, 3]
    assert table["outQx_for"].shape == (3, 2, 4)
    assert table["out_Qmulti"].tolist() == [[6, 6, 6, 6]] * 3


def test_unreadable_sources_are_skipped(tmp_path, caplog):
    good = str(tmp_path / "good.root")
    write_event_tuple(good, [make_event()])
    not_root = tmp_path / "broken.root"
    not_root.write_text("not a ROOT file")
    missing = str(tmp_path / "missing.root")

    with caplog.at_level(logging.WARNING):
        counts = run_extraction([missing, str(not_root), good], str(tmp_path / "out.root"))

    assert counts["files_skipped"] == 2
    assert counts["events_saved"] == 1
    assert "skipping" in caplog.text


def test_backward_count_uses_flag_not_region():
    # flagged tracks near eta=0 stay out of every region but still count as backward
    q = extract_event_qvectors([0.0, 0.0], [0.2, 0.3], [0.1, 0.2], [1.0, 1.0])
    assert q["Qmulti"][3] == 2
    assert q["Qx_back"][0] == 0.0

    # unflagged tracks at negative eta enter the backward Q-vector but not the count
    q = extract_event_qvectors([0.0] * 3, [-1.0, -2.0, -3.0], [0.1, 0.2, 0.3], [0.0] * 3)
    assert q["Qmulti"][3] == 0
    assert q["Qx_back"][0] == pytest.approx(math.cos(0.1) + math.cos(0.2) + math.cos(0.3))


def test_backward_count_ignores_displaced_flagged_tracks():
    q = extract_event_qvectors([0.0, 5.0, 0.0], [1.0, 1.0, 2.0], [0.1, 0.2, 0.3], [1.0, 1.0, 1.0])
    assert q["Qmulti"][3] == 2


def test_event_without_enough_flagged_tracks_dropped():
    # five unflagged tracks at eta=-1.5 fill the backward region but not the backward count
    eta = [1.5] * 6 + [3.0] * 6 + [5.0] * 6 + [-1.5] * 5
    event = make_event(eta=eta, phi=list(np.linspace(0.1, 0.6, 23)), is_backward=[0.0] * 23)
    counts = Counter()

    records = list(extract_events(to_arrays([event]), counts))

    assert records == []
    assert counts["failed_multiplicity_cuts"] == 1


def test_events_appended_across_files_in_order(tmp_path):
    first = str(tmp_path / "a.root")
    second = str(tmp_path / "b.root")
    write_event_tuple(first, [make_event(event_number=1), make_event(event_number=2)])
    write_event_tuple(second, [make_event(n_pvs=0, event_number=3), make_event(event_number=4)])
    output_file = str(tmp_path / "out" / "q.root")

    counts = run_extraction([first, second], output_file)

    assert counts["events_saved"] == 3
    with uproot.open(output_file) as f:
        tree = f[QVECTOR_TREE]
        assert tree.num_entries == 3
        assert list(tree["outEVENTNUMBER"].array(library="np")) == [1, 2, 4]


def test_no_readable_input_gives_empty_tree(tmp_path):
    output_file = str(tmp_path / "q.root")
    counts = run_extraction([str(tmp_path / "missing.root")], output_file)

    assert counts["files_skipped"] == 1
    with uproot.open(output_file) as f:
        assert f[QVECTOR_TREE].num_entries == 0


def test_failed_extraction_leaves_no_output(tmp_path, monkeypatch):
    input_file = str(tmp_path / "in.root")
    write_event_tuple(input_file, [make_event()])
    output_file = str(tmp_path / "q.root")

    def broken_events(arrays, counts=None):
        raise MemoryError("out of memory")
        yield

    monkeypatch.setattr("event_plane.run_qvector_extraction.extract_events", broken_events)
    with pytest.raises(MemoryError):
        run_extraction([input_file], output_file)

    assert not os.path.exists(output_file)


def test_sources_missing_tree_or_branch_are_skipped(tmp_path, caplog):
    wrong_tree = str(tmp_path / "wrong_tree.root")
    with uproot.recreate(wrong_tree) as f:
        f["OtherTuple/OtherTuple"] = {"x": np.arange(3, dtype=np.int32)}

    missing_branch = str(tmp_path / "missing_branch.root")
    events = [make_event()]
    data = {name: np.array([e[name] for e in events], dtype=dtype) for name, dtype in SCALAR_TYPES.items()}
    for name in JAGGED:
        if name != "VELOTRACK_PHI":
            data[name] = ak.Array([[float(x) for x in e[name]] for e in events])
    with uproot.recreate(missing_branch) as f:
        f[EVENT_TUPLE_PATH] = data

    good = str(tmp_path / "good.root")
    write_event_tuple(good, [make_event()])

    with caplog.at_level(logging.WARNING):
        counts = run_extraction([wrong_tree, missing_branch, good], str(tmp_path / "out.root"))

    assert counts["files_skipped"] == 2
    assert counts["events_saved"] == 1
    assert "VELOTRACK_PHI" in caplog.text

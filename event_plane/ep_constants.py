# ep_constants.py

import math

# Event selection (shared by Q-vector extraction and candidate matching)
N_PVS_REQUIRED = 1
MIN_BACK_TRACKS = 10
PVZ_MIN = -100.0
PVZ_MAX = 100.0
MIN_VELO_TRACKS = 15

# Track selection
MAX_TRACK_BIPCHI2 = 1.5

# Pseudorapidity regions (after the backward flip)
BACKWARD_ETA_MAX = -0.5
FORWARD_ETA_EDGES = (0.5, 2.5, 4.0, 6.0)  # bin1 (0.5,2.5], bin2 (2.5,4.0], bin3 (4.0,6.0]
N_FORWARD_REGIONS = 4                     # bin1, bin2, bin3, inclusive (0.5,6.0]
N_HARMONICS = 2                           # n = 1, 2
MIN_REGION_MULTIPLICITY = 5

# Calibration
DEFAULT_CENTRALITY_EDGES = (14, 126, 270, 2000)
CALIB_REGIONS = ("for1", "for2", "for3", "forAll", "back", "full")
BACK_REGION = CALIB_REGIONS.index("back")
FULL_REGION = CALIB_REGIONS.index("full")
DEFAULT_EP_REGION = 3                     # inclusive forward
FLATTENING_ORDER = 4
N_PSI_HIST_BINS = 100
Q1_VARIANTS = ("unweighted", "eta_weighted")

# Sign applied to the backward harmonic-1 sub-event when it is combined with
# the forward one. Harmonic 2 is always +1.
DIRECTED_FLOW_SIGN = {"unweighted": -1.0, "eta_weighted": 1.0}

# Candidate selection
MIN_L0_BPVFDCHI2 = 130.0
MIN_L0_BPVDIRA = 0.9999
MIN_P_BPVIPCHI2 = 25.0
MIN_PI_BPVIPCHI2 = 25.0
MIN_P_PT = 500.0
MIN_PI_PT = 200.0
MAX_GHOSTPROB = 0.1

# Input discovery
AP_RUN_PREFIX = "00274156"
AP_SEQ_MIN = 0
AP_SEQ_MAX = 499
AP_FILE_SUFFIX = "_1.tuple_pbpb2024.root"

# Tree names
EVENT_TUPLE_PATH = "EventTuplePV/EventTuplePV"
QVECTOR_TREE = "QVectorTuple"
EVENT_PLANE_TREE = "EventPlaneTuple"
CANDIDATE_TREE_PATH = "L0Tuple/DecayTree"
MATCHED_TREE = "LambdaEventPlaneTree"

TWO_PI = 2.0 * math.pi

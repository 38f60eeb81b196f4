"""Lightweight configuration for pecreader.

All constants are read once from ``config.yaml`` next to this module so that
there is a single source of truth for cuts, column names and table edges.
"""

from pathlib import Path

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

with open(_CONFIG_PATH, "r", encoding="utf-8") as _fh:
    _CONFIG = yaml.safe_load(_fh)

# --- Physics thresholds (object quality criteria) ------------------------------
CUTS = _CONFIG["cuts"]

# Particle masses (GeV)
MASSES = _CONFIG["masses"]

# --- MET versions ---------------------------------------------------------------
MET_DEFAULT_INDEX = int(_CONFIG["met"]["default_index"])
MET_SYST_INDEX = {
    kind: (int(idx["up"]), int(idx["down"]))
    for kind, idx in _CONFIG["met"]["syst_index"].items()
}
MET_LEGACY_CAMPAIGNS = frozenset(_CONFIG["met"]["legacy_campaigns"])
MET_LEGACY_INDEX = {k: int(v) for k, v in _CONFIG["met"]["legacy_index"].items()}

# --- Input layout ---------------------------------------------------------------
TREES = {group: list(paths) for group, paths in _CONFIG["trees"].items()}

JET_COLUMNS = _CONFIG["jet_columns"]

# --- b-tagging ------------------------------------------------------------------
BTAG_COLUMNS = _CONFIG["btag"]["columns"]
BTAG_THRESHOLDS = _CONFIG["btag"]["thresholds"]
BTAG_ETA_MAX = float(_CONFIG["btag"]["eta_max"])
BTAG_EFF_PT_CAP = float(_CONFIG["btag"]["eff_pt_cap"])
BTAG_EFF_HISTOGRAMS = _CONFIG["btag"]["eff_histograms"]
BTAG_TAG_PT_RANGE = tuple(float(x) for x in _CONFIG["btag"]["tag_pt_range"])
BTAG_TAG_PT_BIN_EDGES = tuple(float(x) for x in _CONFIG["btag"]["tag_pt_bin_upper_edges"])
BTAG_MISTAG_PT_MAX = float(_CONFIG["btag"]["mistag_pt_max"])
BTAG_MISTAG_OUTER_PT_MAX = float(_CONFIG["btag"]["mistag_outer_pt_max"])

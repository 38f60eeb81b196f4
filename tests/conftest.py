"""Shared fixtures: an in-memory column reader and synthetic event rows."""

import numpy as np
import pytest

import pecreader.systematics as systematics
import pecreader.weights as weights
from pecreader.dataset import Dataset, Process
from pecreader.io import ColumnReader

# Number of MET versions stored per event (indices 0..10).
N_MET = 11

MUON_DEFAULTS = dict(pt=35.0, eta=0.5, phi=0.1, iso=0.05, db=0.01, tight=True, negative=True)
ELECTRON_DEFAULTS = dict(
    pt=40.0, eta=-0.8, phi=2.0, iso=0.05, db=0.005, mva=0.9,
    conversion=True, selection_a=True, trigger_pre=True, negative=False,
)
JET_DEFAULTS = dict(pt=50.0, eta=0.5, phi=1.0, mass=8.0, csv=0.9, tchp=2.0, flavour=5, jec_unc=0.1)


class MemoryColumnReader(ColumnReader):
    """``ColumnReader`` over python dicts.

    ``contents`` maps a path to ``{group: [row, ...]}`` where every row maps a
    branch name to its value.
    """

    def __init__(self, contents):
        self.contents = contents
        self.opened = []
        self.n_closed = 0
        self._current = None
        self._bindings = {}

    def open(self, path):
        self._current = self.contents[path]
        self._bindings = {}
        self.opened.append(path)

    def close(self):
        self._current = None
        self.n_closed += 1

    @property
    def num_entries(self):
        return len(self._current["event_id"])

    def bind(self, alias, branch, group, optional=False):
        rows = self._current.get(group, [])
        if rows and branch in rows[0]:
            self._bindings.setdefault(group, {})[alias] = branch
            return True
        if optional:
            return False
        raise KeyError(f"Branch '{branch}' not found in group '{group}'")

    def read(self, index, group):
        row = self._current[group][index]
        return {alias: row[branch] for alias, branch in self._bindings.get(group, {}).items()}


def make_row(muons=(), electrons=(), jets=(), met_pt=40.0, met_phi=0.3, process_id=0,
             n_true=20.0, n_pv=12, hard=None):
    """Build the ``general`` columns of one event.

    MET version ``i`` is stored with pt ``met_pt + i`` so tests can tell which
    version was picked. ``hard`` is a list of
    ``(pdg_id, first_mother, last_mother, pt, eta, phi, mass)`` tuples.
    """
    muons = [{**MUON_DEFAULTS, **m} for m in muons]
    electrons = [{**ELECTRON_DEFAULTS, **e} for e in electrons]
    jets = [{**JET_DEFAULTS, **j} for j in jets]

    def col(objs, key, dtype=float):
        return np.array([o[key] for o in objs], dtype=dtype)

    row = {
        "muPt": col(muons, "pt"),
        "muEta": col(muons, "eta"),
        "muPhi": col(muons, "phi"),
        "muRelIso": col(muons, "iso"),
        "muDB": col(muons, "db"),
        "muQualityTight": col(muons, "tight", bool),
        "muCharge": col(muons, "negative", bool),
        "elePt": col(electrons, "pt"),
        "eleEta": col(electrons, "eta"),
        "elePhi": col(electrons, "phi"),
        "eleRelIso": col(electrons, "iso"),
        "eleDB": col(electrons, "db"),
        "eleMVAID": col(electrons, "mva"),
        "elePassConversion": col(electrons, "conversion", bool),
        "eleSelectionA": col(electrons, "selection_a", bool),
        "eleTriggerPreselection": col(electrons, "trigger_pre", bool),
        "eleCharge": col(electrons, "negative", bool),
        "jetPt": col(jets, "pt"),
        "jetEta": col(jets, "eta"),
        "jetPhi": col(jets, "phi"),
        "jetMass": col(jets, "mass"),
        "jetPtJERUp": col(jets, "pt") * 1.05,
        "jetMassJERUp": col(jets, "mass") * 1.05,
        "jetPtJERDown": col(jets, "pt") * 0.95,
        "jetMassJERDown": col(jets, "mass") * 0.95,
        "jecUncertainty": col(jets, "jec_unc"),
        "jetCSV": col(jets, "csv"),
        "jetTCHP": col(jets, "tchp"),
        "jetFlavour": col(jets, "flavour", int),
        "metPt": met_pt + np.arange(N_MET, dtype=float),
        "metPhi": np.full(N_MET, met_phi),
        "PVSize": n_pv,
        "processID": process_id,
        "PUTrueNumInteractions": n_true,
    }
    if hard is not None:
        for i, branch in enumerate((
            "hardPartPdgId", "hardPartFirstMother", "hardPartLastMother",
            "hardPartPt", "hardPartEta", "hardPartPhi", "hardPartMass",
        )):
            dtype = int if i < 3 else float
            row[branch] = np.array([p[i] for p in hard], dtype=dtype)
    return row


def make_file(rows, first_event=1, fired=None):
    """Group rows into the layout ``MemoryColumnReader`` expects.

    ``fired`` holds one trigger decision per row (all fire by default).
    """
    if fired is None:
        fired = [True] * len(rows)
    return {
        "event_id": [{"run": 1, "lumi": 7, "event": first_event + i} for i in range(len(rows))],
        "trigger": [
            {"names": ["HLT_IsoMu24_eta2p1"], "hasFired": np.array([f], dtype=bool)} for f in fired
        ],
        "general": list(rows),
    }


def read_bound_row(builder, row):
    """Columns of ``row`` as the builder sees them after binding."""
    reader = MemoryColumnReader({"row.root": make_file([row])})
    reader.open("row.root")
    builder.bind_columns(reader)
    return reader.read(0, "general")


@pytest.fixture(autouse=True)
def clear_warn_once():
    """Clear module-level caches between tests."""
    systematics._WARN_ONCE.clear()
    weights._CORRECTIONSET_CACHE.clear()
    yield
    systematics._WARN_ONCE.clear()
    weights._CORRECTIONSET_CACHE.clear()


@pytest.fixture
def row_factory():
    return make_row


@pytest.fixture
def file_factory():
    return make_file


@pytest.fixture
def bound_row():
    return read_bound_row


@pytest.fixture
def reader_factory():
    return MemoryColumnReader


@pytest.fixture
def mc_dataset():
    dataset = Dataset("ttbar", process=Process.TTBAR, is_mc=True)
    dataset.add_file("ttbar_1.root", xsec=100.0, n_events=1000)
    return dataset


@pytest.fixture
def data_dataset():
    dataset = Dataset("SingleMu", process=Process.DATA, is_mc=False)
    dataset.add_file("SingleMu_1.root")
    return dataset

"""Reconstruction and selection of physics objects from one raw row.

Quality criteria are fixed (see ``cuts`` in ``config.yaml``). The build
runs in a fixed order and stops at the first failing step:

1. dataset-specific process filter,
2. loose and tight leptons, then the lepton step of the event selection,
3. jets (rescaled for JES variations), sorted in pt, then the jet step,
4. MET version for the active systematic,
5. neutrino from the W-mass constraint.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace

from pecreader.analysis_config import (
    BTAG_COLUMNS,
    CUTS,
    MASSES,
    MET_LEGACY_CAMPAIGNS,
    MET_LEGACY_INDEX,
)
from pecreader.dataset import Process
from pecreader.neutrino import reconstruct_neutrino, solve_nu_pz
from pecreader.physics_objects import (
    Candidate,
    Flavour,
    Jet,
    Lepton,
    p4_from_ptetaphim,
    scale_p4,
)
from pecreader.systematics import SystVariation, resolve_policy

logger = logging.getLogger(__name__)

WJETS_SPLIT_FLAG = "WjetsKeep0p1p"

# Column group read only for rows that pass the trigger.
GENERAL = "general"

_ELECTRON_BRANCHES = (
    "elePt", "eleEta", "elePhi", "eleRelIso", "eleDB", "eleTriggerPreselection",
    "eleMVAID", "elePassConversion", "eleSelectionA", "eleCharge",
)
_MUON_BRANCHES = ("muPt", "muEta", "muPhi", "muRelIso", "muDB", "muQualityTight", "muCharge")


def btag_alias(algorithm: str) -> str:
    return f"btag_{algorithm}"


@dataclass
class BuiltEvent:
    """Objects of one successfully built event."""

    tight_leptons: list = field(default_factory=list)
    loose_leptons: list = field(default_factory=list)
    jets: list = field(default_factory=list)
    additional_jets: list = field(default_factory=list)
    met: Candidate | None = None
    neutrino: Candidate | None = None


class ObjectBuilder:
    """Turns raw rows into leptons, jets, MET and the neutrino.

    One builder serves one dataset and one systematic variation; the column
    policy is resolved at construction.
    """

    def __init__(self, dataset, syst: SystVariation | None = None, event_selection=None,
                 neutrino_solver=solve_nu_pz, required_btag_algorithms=()):
        self.dataset = dataset
        self.syst = syst if syst is not None else SystVariation()
        self.policy = resolve_policy(self.syst, dataset.is_mc)
        self.event_selection = event_selection
        self.neutrino_solver = neutrino_solver
        self.required_btag_algorithms = frozenset(required_btag_algorithms)
        self._filter_wjets = (
            dataset.is_mc
            and dataset.process is Process.WJETS
            and dataset.has_flag(WJETS_SPLIT_FLAG)
        )
        self._legacy_met = dataset.is_mc and dataset.campaign in MET_LEGACY_CAMPAIGNS

    # ------------------------------------------------------------------
    # Column binding
    # ------------------------------------------------------------------

    def bind_columns(self, reader) -> None:
        """Bind every column the build needs on a freshly opened file."""
        for branch in _ELECTRON_BRANCHES + _MUON_BRANCHES:
            reader.bind(branch, branch, GENERAL)

        reader.bind("jetPt", self.policy.jet_pt_column, GENERAL)
        reader.bind("jetMass", self.policy.jet_mass_column, GENERAL)
        reader.bind("jetEta", "jetEta", GENERAL)
        reader.bind("jetPhi", "jetPhi", GENERAL)
        for algorithm, branch in BTAG_COLUMNS.items():
            optional = algorithm not in self.required_btag_algorithms
            reader.bind(btag_alias(algorithm), branch, GENERAL, optional=optional)

        reader.bind("metPt", "metPt", GENERAL)
        reader.bind("metPhi", "metPhi", GENERAL)
        reader.bind("PVSize", "PVSize", GENERAL)

        if self.dataset.is_mc:
            reader.bind("jetFlavour", "jetFlavour", GENERAL)
            reader.bind("processID", "processID", GENERAL)
            reader.bind("PUTrueNumInteractions", "PUTrueNumInteractions", GENERAL)
            if self.policy.jec_uncertainty_column is not None:
                reader.bind("jecUncertainty", self.policy.jec_uncertainty_column, GENERAL)

    # ------------------------------------------------------------------
    # Build steps
    # ------------------------------------------------------------------

    def passes_process_filter(self, row) -> bool:
        """Keep W+jets events with process ID = 0, 1 (mod 5) when splitting is on."""
        if not self._filter_wjets:
            return True
        return math.fmod(int(row["processID"]), CUTS["process_id_modulus"]) <= CUTS["process_id_keep_max"]

    def build_leptons(self, row):
        """Return ``(tight, loose)``; tight leptons are also in the loose list."""
        tight, loose = [], []

        for i in range(len(row["elePt"])):
            p4 = p4_from_ptetaphim(row["elePt"][i], row["eleEta"][i], row["elePhi"][i], MASSES["electron"])
            rel_iso = float(row["eleRelIso"][i])
            if (p4.pt < CUTS["electron_pt_min"] or abs(p4.eta) > CUTS["electron_eta_max"]
                    or rel_iso > CUTS["electron_loose_reliso_max"]):
                continue

            lepton = Lepton(
                p4,
                flavour=Flavour.ELECTRON,
                rel_iso=rel_iso,
                db=float(row["eleDB"][i]),
                charge=-1 if row["eleCharge"][i] else 1,
            )
            loose.append(lepton)

            if (not row["eleSelectionA"][i] or rel_iso > CUTS["electron_tight_reliso_max"]
                    or not row["elePassConversion"][i] or not row["eleTriggerPreselection"][i]
                    or row["eleMVAID"][i] < CUTS["electron_mva_id_min"]):
                continue
            tight.append(replace(lepton))

        for i in range(len(row["muPt"])):
            p4 = p4_from_ptetaphim(row["muPt"][i], row["muEta"][i], row["muPhi"][i], MASSES["muon"])
            rel_iso = float(row["muRelIso"][i])
            if (p4.pt < CUTS["muon_pt_min"] or abs(p4.eta) > CUTS["muon_loose_eta_max"]
                    or rel_iso > CUTS["muon_loose_reliso_max"]):
                continue

            db = float(row["muDB"][i])
            lepton = Lepton(
                p4,
                flavour=Flavour.MUON,
                rel_iso=rel_iso,
                db=db,
                charge=-1 if row["muCharge"][i] else 1,
            )
            loose.append(lepton)

            if (abs(p4.eta) > CUTS["muon_tight_eta_max"] or not row["muQualityTight"][i]
                    or abs(db) > CUTS["muon_tight_db_max"] or rel_iso > CUTS["muon_tight_reliso_max"]):
                continue
            tight.append(replace(lepton))

        return tight, loose

    def build_jets(self, row):
        """Return ``(analysis, additional)`` jets, each sorted by decreasing pt."""
        analysis, additional = [], []
        btag_values = {
            algorithm: row[btag_alias(algorithm)]
            for algorithm in BTAG_COLUMNS
            if btag_alias(algorithm) in row
        }

        for i in range(len(row["jetPt"])):
            p4 = p4_from_ptetaphim(row["jetPt"][i], row["jetEta"][i], row["jetPhi"][i], row["jetMass"][i])
            if self.policy.rescale_jets:
                p4 = scale_p4(p4, self.policy.jet_scale(self.syst.direction, float(row["jecUncertainty"][i])))

            if p4.pt < CUTS["jet_pt_min"] or abs(p4.eta) > CUTS["jet_eta_max"]:
                continue

            jet = Jet(p4, btag={algorithm: float(values[i]) for algorithm, values in btag_values.items()})
            if self.dataset.is_mc:
                jet.parent_id = int(row["jetFlavour"][i])

            if self.event_selection is None or self.event_selection.is_analysis_jet(jet):
                analysis.append(jet)
            else:
                additional.append(jet)

        # JES/JER variations may break the pt ordering of the input.
        analysis.sort(reverse=True)
        additional.sort(reverse=True)
        return analysis, additional

    def met_index(self, tight_leptons) -> int:
        if self._legacy_met and not self.syst.is_shape:
            # Legacy production stored a wrong central MET in simulation; the
            # lepton-energy-scale variation of the other flavour equals the
            # correct central value.
            if tight_leptons[0].flavour is Flavour.MUON:
                return MET_LEGACY_INDEX["muon"]
            return MET_LEGACY_INDEX["electron"]
        return self.policy.met_index

    def build(self, row, event_id=None, file_name=None, row_index=None) -> BuiltEvent | None:
        """Build and select the event in ``row``; ``None`` if it is rejected."""
        if not self.passes_process_filter(row):
            return None

        tight, loose = self.build_leptons(row)
        if self.event_selection is not None and not self.event_selection.pass_lepton_step(tight, loose):
            return None

        jets, additional = self.build_jets(row)
        if self.event_selection is not None and not self.event_selection.pass_jet_step(jets):
            return None

        # The neutrino is reconstructed with the leading tight lepton.
        if not tight:
            return None

        index = self.met_index(tight)
        met_pt_values, met_phi_values = row["metPt"], row["metPhi"]
        if index >= len(met_pt_values):
            logger.warning(
                "MET version %d is not stored in row %s of file \"%s\" (ID %s). The event is skipped.",
                index, row_index, file_name, event_id,
            )
            return None

        met_pt, met_phi = float(met_pt_values[index]), float(met_phi_values[index])
        if math.isnan(met_pt) or math.isnan(met_phi):
            logger.warning(
                "MET is NaN in row %s of file \"%s\" (ID %s). The event is skipped.",
                row_index, file_name, event_id,
            )
            return None

        if met_pt <= 0.0:
            logger.warning(
                "MET has non-positive pt in row %s of file \"%s\" (ID %s). The event is skipped.",
                row_index, file_name, event_id,
            )
            return None

        met = Candidate(p4_from_ptetaphim(met_pt, 0.0, met_phi, 0.0))
        neutrino = reconstruct_neutrino(tight, met, self.neutrino_solver)
        return BuiltEvent(tight, loose, jets, additional, met, neutrino)

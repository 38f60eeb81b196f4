"""Trigger and event selection interfaces, plus a generic event selection."""

from __future__ import annotations

import abc

from pecreader.physics_objects import Flavour


class TriggerSelection(abc.ABC):
    """Decides whether an event passes the trigger and how it is weighted."""

    @abc.abstractmethod
    def pass_trigger(self, event_id, names, fired) -> bool:
        """``names`` lists the trigger paths stored in the file and ``fired``
        holds one decision per path."""

    def new_file(self, is_real_data: bool) -> None:
        """Called every time the stream opens a new file."""

    def get_weight(self, event) -> float:
        """Weight of an accepted event; ``event`` is its ``EventSnapshot`` before weighting."""
        return 1.0


class EventSelection(abc.ABC):
    @abc.abstractmethod
    def pass_lepton_step(self, tight_leptons, loose_leptons) -> bool:
        ...

    @abc.abstractmethod
    def pass_jet_step(self, jets) -> bool:
        ...

    @abc.abstractmethod
    def is_analysis_jet(self, jet) -> bool:
        ...


class GenericEventSelection(EventSelection):
    """Fixed number of tight leptons per flavour and allowed jet/tag bins.

    Every ``add_lepton_threshold`` call requests one more tight lepton of the
    given flavour. An event passes the lepton step if, for each flavour, the
    tight leptons sorted in pt match the thresholds one to one and there are
    no extra loose leptons. Analysis jets are jets above ``jet_pt_threshold``.
    """

    def __init__(self, jet_pt_threshold: float, tagger=None):
        self.jet_pt_threshold = float(jet_pt_threshold)
        self.tagger = tagger
        self._lepton_thresholds = {flavour: [] for flavour in Flavour}
        self._jet_bins = []

    def add_lepton_threshold(self, flavour: Flavour, pt_threshold: float) -> None:
        thresholds = self._lepton_thresholds[Flavour(flavour)]
        thresholds.append(float(pt_threshold))
        thresholds.sort(reverse=True)

    def add_jet_bin(self, n_jets: int) -> None:
        """Allow events with ``n_jets`` analysis jets and any number of tags."""
        self._jet_bins.append((int(n_jets), None))

    def add_jet_tag_bin(self, n_jets: int, n_tags: int) -> None:
        if self.tagger is None:
            raise ValueError("A b-tagger is needed to select events on the number of tags.")
        self._jet_bins.append((int(n_jets), int(n_tags)))

    def pass_lepton_step(self, tight_leptons, loose_leptons) -> bool:
        for flavour, thresholds in self._lepton_thresholds.items():
            leptons = sorted(
                (lep for lep in tight_leptons if lep.flavour is flavour),
                key=lambda lep: lep.pt,
                reverse=True,
            )
            if len(leptons) != len(thresholds):
                return False
            if any(lep.pt < threshold for lep, threshold in zip(leptons, thresholds)):
                return False

        # Loose leptons include the tight ones, so extra leptons show up as a size mismatch.
        return len(tight_leptons) == len(loose_leptons)

    def pass_jet_step(self, jets) -> bool:
        n_jets = len(jets)
        n_tags = None
        for bin_jets, bin_tags in self._jet_bins:
            if bin_jets != n_jets:
                continue
            if bin_tags is None:
                return True
            if n_tags is None:
                n_tags = sum(1 for jet in jets if self.tagger.is_tagged(jet))
            if bin_tags == n_tags:
                return True
        return False

    def is_analysis_jet(self, jet) -> bool:
        return jet.pt > self.jet_pt_threshold

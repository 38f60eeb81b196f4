"""Event weights: cross-section, trigger, pile-up and b-tagging.

The central weight is the product of the four factors. When weight-only
systematics are requested, each optional source is varied on its own while
the other factors stay at their central values; the varied numbers are
full replacements for the central weight.

Factors are accumulated in a coffea ``Weights`` container of length one so
that the up/down bookkeeping follows the same rules as in columnar code.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from coffea.analysis_tools import Weights

from pecreader.analysis_config import BTAG_ETA_MAX
from pecreader.btagging import SFVariation
from pecreader.systematics import SystType, SystVariation, WeightPair, WeightSource

logger = logging.getLogger(__name__)

# Cache correctionlib payloads per process (avoid re-reading JSON for every stream).
_CORRECTIONSET_CACHE = {}


class PileUpWeights(NamedTuple):
    central: float
    up: float
    down: float


class PileUpReweighter:
    """Pile-up weights from a correctionlib payload.

    The correction is evaluated as ``evaluate(n_true, variation)`` with
    ``variation`` one of ``"nominal"``, ``"up"``, ``"down"``.
    """

    def __init__(self, json_path, correction_name):
        self.json_path = str(json_path)
        self.correction_name = correction_name

    def _correction(self):
        import correctionlib

        ceval = _CORRECTIONSET_CACHE.get(self.json_path)
        if ceval is None:
            ceval = correctionlib.CorrectionSet.from_file(self.json_path)
            _CORRECTIONSET_CACHE[self.json_path] = ceval
        return ceval[self.correction_name]

    def get_weights(self, n_true_interactions) -> PileUpWeights:
        corr = self._correction()
        n_true = float(n_true_interactions)
        return PileUpWeights(
            float(corr.evaluate(n_true, "nominal")),
            float(corr.evaluate(n_true, "up")),
            float(corr.evaluate(n_true, "down")),
        )


class BTagWeightVariation(enum.Enum):
    CENTRAL = "central"
    TAG_RATE_UP = "tagRateUp"
    TAG_RATE_DOWN = "tagRateDown"
    MISTAG_RATE_UP = "mistagRateUp"
    MISTAG_RATE_DOWN = "mistagRateDown"


_HEAVY_SF_VARIATION = {
    BTagWeightVariation.TAG_RATE_UP: SFVariation.UP,
    BTagWeightVariation.TAG_RATE_DOWN: SFVariation.DOWN,
}

_LIGHT_SF_VARIATION = {
    BTagWeightVariation.MISTAG_RATE_UP: SFVariation.UP,
    BTagWeightVariation.MISTAG_RATE_DOWN: SFVariation.DOWN,
}


class BTagWeight:
    """Per-event b-tagging weight.

    For jets inside the tagging acceptance the weight is
    ``prod_tagged(SF) * prod_untagged((1 - SF*eff) / (1 - eff))``. Tag-rate
    variations shift the scale factors of b and c jets, mistag-rate
    variations those of light-flavour and gluon jets.
    """

    def __init__(self, tagger, database):
        self.tagger = tagger
        self.database = database

    def calc_weight(self, jets, variation=BTagWeightVariation.CENTRAL) -> float:
        weight = 1.0
        for jet in jets:
            if abs(jet.eta) >= BTAG_ETA_MAX:
                continue

            if abs(int(jet.parent_id)) in (4, 5):
                sf_var = _HEAVY_SF_VARIATION.get(variation, SFVariation.CENTRAL)
            else:
                sf_var = _LIGHT_SF_VARIATION.get(variation, SFVariation.CENTRAL)
            sf = self.database.get_scale_factor(jet, sf_var)

            if self.tagger.is_tagged(jet):
                weight *= sf
            else:
                eff = self.database.get_efficiency(jet)
                if eff < 1.0:
                    weight *= (1.0 - sf * eff) / (1.0 - eff)
        return weight


@dataclass
class EventWeights:
    central: float
    variations: dict = field(default_factory=lambda: {source: [] for source in WeightSource})


class WeightEngine:
    """Combines the weight factors of one event.

    Modules left as ``None`` contribute a factor of one and produce no
    variations.
    """

    def __init__(self, syst: SystVariation | None = None, trigger_selection=None,
                 pileup_reweighter=None, btag_weight: BTagWeight | None = None):
        self.syst = syst if syst is not None else SystVariation()
        self.trigger_selection = trigger_selection
        self.pileup_reweighter = pileup_reweighter
        self.btag_weight = btag_weight
        self.cross_section_weight = 1.0

    def set_cross_section_weight(self, value: float) -> None:
        self.cross_section_weight = float(value)

    def compute(self, jets, n_true_interactions=0.0, event=None) -> EventWeights:
        """Central weight and, for ``WeightOnly``, the per-source pairs.

        ``event`` is handed to the trigger module to compute its weight.
        """
        weights = Weights(1, storeIndividual=True)
        weights.add("crossSection", np.array([self.cross_section_weight]))

        trigger_weight = 1.0
        if self.trigger_selection is not None:
            trigger_weight = float(self.trigger_selection.get_weight(event))
        weights.add("trigger", np.array([trigger_weight]))

        if self.pileup_reweighter is not None:
            pu = self.pileup_reweighter.get_weights(n_true_interactions)
            weights.add(
                "pileup",
                np.array([pu.central]),
                weightUp=np.array([pu.up]),
                weightDown=np.array([pu.down]),
            )

        if self.btag_weight is not None:
            weights.add("btag", np.array([self.btag_weight.calc_weight(jets)]))

        result = EventWeights(central=float(weights.weight()[0]))
        if self.syst.kind is not SystType.WEIGHT_ONLY:
            return result

        if self.pileup_reweighter is not None:
            result.variations[WeightSource.PILEUP].append(
                WeightPair(
                    float(weights.weight(modifier="pileupUp")[0]),
                    float(weights.weight(modifier="pileupDown")[0]),
                )
            )

        if self.btag_weight is not None:
            weight_but_btag = float(weights.partial_weight(exclude=["btag"])[0])
            for source, up, down in (
                (WeightSource.TAG_RATE, BTagWeightVariation.TAG_RATE_UP, BTagWeightVariation.TAG_RATE_DOWN),
                (WeightSource.MISTAG_RATE, BTagWeightVariation.MISTAG_RATE_UP, BTagWeightVariation.MISTAG_RATE_DOWN),
            ):
                result.variations[source].append(
                    WeightPair(
                        weight_but_btag * self.btag_weight.calc_weight(jets, up),
                        weight_but_btag * self.btag_weight.calc_weight(jets, down),
                    )
                )

        return result

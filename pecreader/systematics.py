"""Systematic variations and the column/MET dispatch they imply.

Two families of systematics exist. Weight-only sources (pile-up, b-tagging
rates) are all evaluated together when ``SystType.WEIGHT_ONLY`` is requested.
Shape-changing sources (JES, JER, unclustered MET) alter the reconstructed
objects; only one of them can be active in a given pass over the data.

The dispatch from a variation to the input columns and MET version is a
lookup into ``_POLICIES``, resolved once per file.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import NamedTuple

from pecreader.analysis_config import JET_COLUMNS, MET_DEFAULT_INDEX, MET_SYST_INDEX

logger = logging.getLogger(__name__)

# Warn-once cache (per process) to avoid log spam.
_WARN_ONCE: set[str] = set()


class SystType(enum.Enum):
    NONE = "None"
    WEIGHT_ONLY = "WeightOnly"
    JEC = "JetEnergyScale"
    JER = "JetEnergyResolution"
    MET_UNCLUSTERED = "METUnclustered"


class WeightSource(enum.Enum):
    """Sources of weight-only variations."""

    PILEUP = "pileup"
    TAG_RATE = "tagRate"
    MISTAG_RATE = "mistagRate"


class WeightPair(NamedTuple):
    """Alternative event weights for one source; they replace the central weight."""

    up: float
    down: float


@dataclass(frozen=True)
class SystVariation:
    """Requested systematic variation.

    ``direction`` must be 0 for ``NONE`` and ``WEIGHT_ONLY`` and +1 or -1 for
    the shape-changing kinds.
    """

    kind: SystType = SystType.NONE
    direction: int = 0

    def __post_init__(self):
        if not isinstance(self.kind, SystType):
            raise ValueError(f"Unknown systematic type {self.kind!r}.")
        if self.kind in (SystType.NONE, SystType.WEIGHT_ONLY):
            if self.direction != 0:
                raise ValueError(
                    f"Systematic {self.kind.value} does not take a direction; got {self.direction}."
                )
        elif self.direction not in (-1, 1):
            raise ValueError(
                f"Systematic {self.kind.value} requires direction +1 or -1; got {self.direction}."
            )

    @property
    def is_shape(self) -> bool:
        return self.kind in (SystType.JEC, SystType.JER, SystType.MET_UNCLUSTERED)


@dataclass(frozen=True)
class SystPolicy:
    """What a variation changes in reading and building an event."""

    jet_pt_column: str
    jet_mass_column: str
    jec_uncertainty_column: str | None
    met_index: int
    rescale_jets: bool

    def jet_scale(self, direction: int, uncertainty: float) -> float:
        """Multiplicative factor applied to a jet four-momentum."""
        if not self.rescale_jets:
            return 1.0
        return 1.0 + direction * uncertainty


def _build_policies():
    nominal_pt = JET_COLUMNS["nominal"]["pt"]
    nominal_mass = JET_COLUMNS["nominal"]["mass"]
    nominal = SystPolicy(nominal_pt, nominal_mass, None, MET_DEFAULT_INDEX, False)

    policies = {
        (SystType.NONE, 0): nominal,
        (SystType.WEIGHT_ONLY, 0): nominal,
    }
    for sign, label in ((1, "up"), (-1, "down")):
        pos = 0 if sign > 0 else 1
        jer_cols = JET_COLUMNS["JetEnergyResolution"][label]
        policies[(SystType.JEC, sign)] = SystPolicy(
            nominal_pt, nominal_mass, JET_COLUMNS["jec_uncertainty"],
            MET_SYST_INDEX[SystType.JEC.value][pos], True,
        )
        policies[(SystType.JER, sign)] = SystPolicy(
            jer_cols["pt"], jer_cols["mass"], None, MET_SYST_INDEX[SystType.JER.value][pos], False
        )
        policies[(SystType.MET_UNCLUSTERED, sign)] = SystPolicy(
            nominal_pt, nominal_mass, None, MET_SYST_INDEX[SystType.MET_UNCLUSTERED.value][pos], False
        )
    return policies


_POLICIES = _build_policies()


def resolve_policy(syst: SystVariation, is_mc: bool) -> SystPolicy:
    """Return the column/MET policy for ``syst``.

    Alternative jet columns exist in simulation only, so real data always
    gets the nominal policy.
    """
    if syst.is_shape and not is_mc:
        key = f"data_shape_syst::{syst.kind.value}"
        if key not in _WARN_ONCE:
            _WARN_ONCE.add(key)
            logger.warning(
                "Shape systematic %s requested for real data; reading nominal quantities.",
                syst.kind.value,
            )
        return _POLICIES[(SystType.NONE, 0)]
    return _POLICIES[(syst.kind, syst.direction)]

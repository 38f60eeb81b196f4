"""b-tagging: tagger definitions, efficiency maps and data/MC scale factors.

Scale factors are the 2012 parametrisations published for the muon-jet
(ttbar) payload. Heavy-flavour jets use a single fit in pt with a binned
uncertainty; light-flavour and gluon jets use cubic fits in pt binned in
|eta| for the mean, minimum and maximum hypotheses.

Efficiencies are 2-D (pt, eta) maps per jet flavour, read from a ROOT file
with uproot and evaluated through coffea's ``dense_lookup``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

import numpy as np
from coffea.lookup_tools.dense_lookup import dense_lookup

from pecreader.analysis_config import (
    BTAG_EFF_HISTOGRAMS,
    BTAG_EFF_PT_CAP,
    BTAG_ETA_MAX,
    BTAG_MISTAG_OUTER_PT_MAX,
    BTAG_MISTAG_PT_MAX,
    BTAG_TAG_PT_BIN_EDGES,
    BTAG_TAG_PT_RANGE,
    BTAG_THRESHOLDS,
)
from pecreader.resources import ResourcePermit

logger = logging.getLogger(__name__)


class BTagAlgorithm(enum.Enum):
    TCHP = "TCHP"
    CSV = "CSV"
    CSVV1 = "CSVV1"
    CSVSLV1 = "CSVSLV1"


class WorkingPoint(enum.Enum):
    LOOSE = "L"
    MEDIUM = "M"
    TIGHT = "T"


_WP_CONFIG_KEYS = {
    WorkingPoint.LOOSE: "loose",
    WorkingPoint.MEDIUM: "medium",
    WorkingPoint.TIGHT: "tight",
}


class SFVariation(enum.Enum):
    CENTRAL = "central"
    UP = "up"
    DOWN = "down"


class EtaOutOfRangeError(ValueError):
    """A mistag fit was evaluated outside the |eta| range it was derived in."""


class BTagger:
    """Tags jets by comparing a discriminator with a working-point threshold."""

    def __init__(self, algorithm: BTagAlgorithm, working_point: WorkingPoint):
        self.algorithm = BTagAlgorithm(algorithm)
        self.working_point = WorkingPoint(working_point)
        self.threshold = float(
            BTAG_THRESHOLDS[self.algorithm.value][_WP_CONFIG_KEYS[self.working_point]]
        )

    @property
    def text_code(self) -> str:
        """Short label such as ``CSVM``, used in file names."""
        return self.algorithm.value + self.working_point.value

    def is_tagged(self, jet) -> bool:
        return jet.discriminator(self.algorithm.value) > self.threshold

    def __repr__(self) -> str:
        return f"BTagger({self.text_code}, threshold={self.threshold})"


# ---------------------------------------------------------------------------
# Parametrisations
# ---------------------------------------------------------------------------

def _rational(a, b, c):
    """``a * (1 + b*pt) / (1 + c*pt)``"""

    def sf(pt):
        return a * ((1.0 + (b * pt)) / (1.0 + (c * pt)))

    return sf


def _poly(*coeffs):
    """Polynomial in pt of degree ``len(coeffs) - 1`` (at most cubic)."""

    def sf(pt):
        value = coeffs[0] + (coeffs[1] * pt)
        if len(coeffs) > 2:
            value = value + (coeffs[2] * (pt * pt))
        if len(coeffs) > 3:
            value = value + (coeffs[3] * (pt * (pt * pt)))
        return value

    return sf


@dataclass(frozen=True)
class MistagFit:
    """Cubic fits of the light-flavour SF in one |eta| bin.

    Each entry of ``mean``, ``low`` and ``high`` is the coefficient tuple
    (c0, c1, c2, c3).
    """

    eta_max: float
    mean: tuple
    low: tuple
    high: tuple


@dataclass(frozen=True)
class _PayloadData:
    tag_sf: object
    tag_uncertainties: tuple
    mistag_fits: tuple
    mistag_outer_region: float


class BTagPayload(enum.Enum):
    """Supported (algorithm, working point) combinations."""

    TCHP_T = (BTagAlgorithm.TCHP, WorkingPoint.TIGHT)
    CSV_L = (BTagAlgorithm.CSV, WorkingPoint.LOOSE)
    CSV_M = (BTagAlgorithm.CSV, WorkingPoint.MEDIUM)
    CSV_T = (BTagAlgorithm.CSV, WorkingPoint.TIGHT)
    CSVV1_L = (BTagAlgorithm.CSVV1, WorkingPoint.LOOSE)
    CSVV1_M = (BTagAlgorithm.CSVV1, WorkingPoint.MEDIUM)
    CSVV1_T = (BTagAlgorithm.CSVV1, WorkingPoint.TIGHT)
    CSVSLV1_L = (BTagAlgorithm.CSVSLV1, WorkingPoint.LOOSE)
    CSVSLV1_M = (BTagAlgorithm.CSVSLV1, WorkingPoint.MEDIUM)
    CSVSLV1_T = (BTagAlgorithm.CSVSLV1, WorkingPoint.TIGHT)

    @classmethod
    def for_tagger(cls, tagger: BTagger) -> "BTagPayload":
        try:
            return cls((tagger.algorithm, tagger.working_point))
        except ValueError:
            raise ValueError(
                f"b-tagging scale factors are not available for {tagger.text_code}."
            ) from None

    @property
    def data(self) -> _PayloadData:
        return _PAYLOADS[self]


_PAYLOADS = {
    BTagPayload.TCHP_T: _PayloadData(
        tag_sf=_rational(0.703389, 0.088358, 0.0660291),
        tag_uncertainties=(
            0.0624031, 0.034023, 0.0362764, 0.0341996, 0.031248, 0.0281222, 0.0316684, 0.0276272,
            0.0208828, 0.0223511, 0.0224121, 0.0261939, 0.0268247, 0.0421413, 0.0532897, 0.0506714,
        ),
        mistag_fits=(
            MistagFit(
                2.4,
                mean=(1.20175, 0.000858187, -1.98726e-06, 1.31057e-09),
                low=(0.968557, 0.000586877, -1.34624e-06, 9.09724e-10),
                high=(1.43508, 0.00112666, -2.62078e-06, 1.70697e-09),
            ),
        ),
        mistag_outer_region=2.4,
    ),
    BTagPayload.CSV_L: _PayloadData(
        tag_sf=_rational(0.997942, 0.00923753, 0.0096119),
        tag_uncertainties=(
            0.033299, 0.0146768, 0.013803, 0.0170145, 0.0166976, 0.0137879, 0.0149072, 0.0153068,
            0.0133077, 0.0123737, 0.0157152, 0.0175161, 0.0209241, 0.0278605, 0.0346928, 0.0350099,
        ),
        mistag_fits=(
            MistagFit(
                0.5,
                mean=(1.01177, 0.0023066, -4.56052e-06, 2.57917e-09),
                low=(0.977761, 0.00170704, -3.2197e-06, 1.78139e-09),
                high=(1.04582, 0.00290226, -5.89124e-06, 3.37128e-09),
            ),
            MistagFit(
                1.0,
                mean=(0.975966, 0.00196354, -3.83768e-06, 2.17466e-09),
                low=(0.945135, 0.00146006, -2.70048e-06, 1.4883e-09),
                high=(1.00683, 0.00246404, -4.96729e-06, 2.85697e-09),
            ),
            MistagFit(
                1.5,
                mean=(0.93821, 0.00180935, -3.86937e-06, 2.43222e-09),
                low=(0.911657, 0.00142008, -2.87569e-06, 1.76619e-09),
                high=(0.964787, 0.00219574, -4.85552e-06, 3.09457e-09),
            ),
            MistagFit(
                2.4,
                mean=(1.00022, 0.0010998, -3.10672e-06, 2.35006e-09),
                low=(0.970045, 0.000862284, -2.31714e-06, 1.68866e-09),
                high=(1.03039, 0.0013358, -3.89284e-06, 3.01155e-09),
            ),
        ),
        mistag_outer_region=1.5,
    ),
    BTagPayload.CSV_M: _PayloadData(
        tag_sf=_poly(0.938887, 0.00017124, -2.76366e-07),
        tag_uncertainties=(
            0.0415707, 0.0204209, 0.0223227, 0.0206655, 0.0199325, 0.0174121, 0.0202332, 0.0182446,
            0.0159777, 0.0218531, 0.0204688, 0.0265191, 0.0313175, 0.0415417, 0.0740446, 0.0596716,
        ),
        mistag_fits=(
            MistagFit(
                0.8,
                mean=(1.07541, 0.00231827, -4.74249e-06, 2.70862e-09),
                low=(0.964527, 0.00149055, -2.78338e-06, 1.51771e-09),
                high=(1.18638, 0.00314148, -6.68993e-06, 3.89288e-09),
            ),
            MistagFit(
                1.6,
                mean=(1.05613, 0.00114031, -2.56066e-06, 1.67792e-09),
                low=(0.946051, 0.000759584, -1.52491e-06, 9.65822e-10),
                high=(1.16624, 0.00151884, -3.59041e-06, 2.38681e-09),
            ),
            MistagFit(
                2.4,
                mean=(1.05625, 0.000487231, -2.22792e-06, 1.70262e-09),
                low=(0.956736, 0.000280197, -1.42739e-06, 1.0085e-09),
                high=(1.15575, 0.000693344, -3.02661e-06, 2.39752e-09),
            ),
        ),
        mistag_outer_region=1.6,
    ),
    BTagPayload.CSV_T: _PayloadData(
        tag_sf=_poly(0.927563, 1.55479e-05, -1.90666e-07),
        tag_uncertainties=(
            0.0515703, 0.0264008, 0.0272757, 0.0275565, 0.0248745, 0.0218456, 0.0253845, 0.0239588,
            0.0271791, 0.0273912, 0.0379822, 0.0411624, 0.0786307, 0.0866832, 0.0942053, 0.102403,
        ),
        mistag_fits=(
            MistagFit(
                2.4,
                mean=(1.00462, 0.00325971, -7.79184e-06, 5.22506e-09),
                low=(0.845757, 0.00186422, -4.6133e-06, 3.21723e-09),
                high=(1.16361, 0.00464695, -1.09467e-05, 7.21896e-09),
            ),
        ),
        mistag_outer_region=2.4,
    ),
    BTagPayload.CSVV1_L: _PayloadData(
        tag_sf=_rational(1.7586, 0.799078, 1.44245),
        tag_uncertainties=(
            0.0345802, 0.0152688, 0.0149101, 0.0167145, 0.0167098, 0.013472, 0.0146024, 0.0156735,
            0.0142592, 0.0147227, 0.0167101, 0.0191159, 0.0360389, 0.0331342, 0.0336916, 0.0298064,
        ),
        mistag_fits=(
            MistagFit(
                0.5,
                mean=(1.03599, 0.00187708, -3.73001e-06, 2.09649e-09),
                low=(0.995735, 0.00146811, -2.83906e-06, 1.5717e-09),
                high=(1.0763, 0.00228243, -4.61169e-06, 2.61601e-09),
            ),
            MistagFit(
                1.0,
                mean=(0.987393, 0.00162718, -3.21869e-06, 1.84615e-09),
                low=(0.947416, 0.00130297, -2.50427e-06, 1.41682e-09),
                high=(1.02741, 0.00194855, -3.92587e-06, 2.27149e-09),
            ),
            MistagFit(
                1.5,
                mean=(0.950146, 0.00150932, -3.28136e-06, 2.06196e-09),
                low=(0.91407, 0.00123525, -2.61966e-06, 1.63016e-09),
                high=(0.986259, 0.00178067, -3.93596e-06, 2.49014e-09),
            ),
            MistagFit(
                2.4,
                mean=(1.01923, 0.000898874, -2.57986e-06, 1.8149e-09),
                low=(0.979782, 0.000743807, -2.14927e-06, 1.49486e-09),
                high=(1.05868, 0.00105264, -3.00767e-06, 2.13498e-09),
            ),
        ),
        mistag_outer_region=1.5,
    ),
    BTagPayload.CSVV1_M: _PayloadData(
        tag_sf=_poly(0.952067, -2.00037e-05),
        tag_uncertainties=(
            0.0376303, 0.0187774, 0.019884, 0.0215849, 0.0207925, 0.0180289, 0.0178674, 0.0159339,
            0.019042, 0.020975, 0.0189178, 0.0246477, 0.0291784, 0.0428437, 0.0674624, 0.0479834,
        ),
        mistag_fits=(
            MistagFit(
                0.8,
                mean=(1.06383, 0.00279657, -5.75405e-06, 3.4302e-09),
                low=(0.971686, 0.00195242, -3.98756e-06, 2.38991e-09),
                high=(1.15605, 0.00363538, -7.50634e-06, 4.4624e-09),
            ),
            MistagFit(
                1.6,
                mean=(1.03709, 0.00169762, -3.52511e-06, 2.25975e-09),
                low=(0.947328, 0.00117422, -2.32363e-06, 1.46136e-09),
                high=(1.12687, 0.00221834, -4.71949e-06, 3.05456e-09),
            ),
            MistagFit(
                2.4,
                mean=(1.01679, 0.00211998, -6.26097e-06, 4.53843e-09),
                low=(0.922527, 0.00176245, -5.14169e-06, 3.61532e-09),
                high=(1.11102, 0.00247531, -7.37745e-06, 5.46589e-09),
            ),
        ),
        mistag_outer_region=1.6,
    ),
    BTagPayload.CSVV1_T: _PayloadData(
        tag_sf=_poly(0.912578, 0.000115164, -2.24429e-07),
        tag_uncertainties=(
            0.0564014, 0.0293159, 0.0315288, 0.0301526, 0.0266047, 0.0240973, 0.0254404, 0.0241548,
            0.0233434, 0.0303961, 0.040912, 0.042942, 0.0440911, 0.0555312, 0.105762, 0.0886457,
        ),
        mistag_fits=(
            MistagFit(
                2.4,
                mean=(1.15047, 0.00220948, -5.17912e-06, 3.39216e-09),
                low=(0.936862, 0.00149618, -3.64924e-06, 2.43883e-09),
                high=(1.36418, 0.00291794, -6.6956e-06, 4.33793e-09),
            ),
        ),
        mistag_outer_region=2.4,
    ),
    BTagPayload.CSVSLV1_L: _PayloadData(
        tag_sf=_rational(0.970168, 0.00266812, 0.00250852),
        tag_uncertainties=(
            0.135344, 0.0288656, 0.0259088, 0.0199242, 0.0189792, 0.0178341, 0.0187104, 0.0239028,
            0.0211104, 0.017689, 0.02823, 0.0259654, 0.0614497,
        ),
        mistag_fits=(
            MistagFit(
                0.5,
                mean=(1.06344, 0.0014539, -2.72328e-06, 1.47643e-09),
                low=(1.01168, 0.000950951, -1.58947e-06, 7.96543e-10),
                high=(1.11523, 0.00195443, -3.85115e-06, 2.15307e-09),
            ),
            MistagFit(
                1.0,
                mean=(1.0123, 0.00151734, -2.99087e-06, 1.73428e-09),
                low=(0.960377, 0.00109821, -2.01652e-06, 1.13076e-09),
                high=(1.06426, 0.0019339, -3.95863e-06, 2.3342e-09),
            ),
            MistagFit(
                1.5,
                mean=(0.975277, 0.00146932, -3.17563e-06, 2.03698e-09),
                low=(0.931687, 0.00110971, -2.29681e-06, 1.45867e-09),
                high=(1.0189, 0.00182641, -4.04782e-06, 2.61199e-09),
            ),
            MistagFit(
                2.4,
                mean=(1.04201, 0.000827388, -2.31261e-06, 1.62629e-09),
                low=(0.992838, 0.000660673, -1.84971e-06, 1.2758e-09),
                high=(1.09118, 0.000992959, -2.77313e-06, 1.9769e-09),
            ),
        ),
        mistag_outer_region=1.5,
    ),
    BTagPayload.CSVSLV1_M: _PayloadData(
        tag_sf=_poly(0.939238, 0.000278928, -7.49693e-07, 2.04822e-10),
        tag_uncertainties=(
            0.0918443, 0.0282557, 0.0264246, 0.0242536, 0.0218046, 0.0207568, 0.0207962, 0.0208919,
            0.0200894, 0.0258879, 0.0270699, 0.0256006, 0.0438219,
        ),
        mistag_fits=(
            MistagFit(
                0.8,
                mean=(1.06212, 0.00223614, -4.25167e-06, 2.42728e-09),
                low=(0.903956, 0.00121678, -2.04383e-06, 1.10727e-09),
                high=(1.22035, 0.00325183, -6.45023e-06, 3.74225e-09),
            ),
            MistagFit(
                1.6,
                mean=(1.04547, 0.00216995, -4.579e-06, 2.91791e-09),
                low=(0.900637, 0.00120088, -2.27069e-06, 1.40609e-09),
                high=(1.19034, 0.00313562, -6.87854e-06, 4.42546e-09),
            ),
            MistagFit(
                2.4,
                mean=(0.991865, 0.00324957, -9.65897e-06, 7.13694e-09),
                low=(0.868875, 0.00222761, -6.44897e-06, 4.53261e-09),
                high=(1.11481, 0.00426745, -1.28612e-05, 9.74425e-09),
            ),
        ),
        mistag_outer_region=1.6,
    ),
    BTagPayload.CSVSLV1_T: _PayloadData(
        tag_sf=_poly(0.928257, 9.3526e-05, -4.1568e-07),
        tag_uncertainties=(
            0.10761, 0.0333696, 0.0339123, 0.0302699, 0.0261626, 0.0274243, 0.0224287, 0.0239842,
            0.0267866, 0.0254787, 0.0317589, 0.0365968, 0.0481259,
        ),
        mistag_fits=(
            MistagFit(
                2.4,
                mean=(1.09494, 0.00193966, -4.35021e-06, 2.8973e-09),
                low=(0.813331, 0.00139561, -3.15313e-06, 2.12173e-09),
                high=(1.37663, 0.00247963, -5.53583e-06, 3.66635e-09),
            ),
        ),
        mistag_outer_region=2.4,
    ),
}


# ---------------------------------------------------------------------------
# Efficiencies
# ---------------------------------------------------------------------------

_FLAVOUR_KEYS = ("b", "c", "uds", "g")


def _flavour_key(parent_id) -> str:
    flavour = abs(int(parent_id))
    if flavour == 5:
        return "b"
    if flavour == 4:
        return "c"
    if flavour == 21:
        return "g"
    return "uds"


class EfficiencyTable:
    """Per-flavour b-tagging efficiency maps in (pt, eta)."""

    def __init__(self, lookups: dict):
        missing = [k for k in _FLAVOUR_KEYS if k not in lookups]
        if missing:
            raise ValueError(f"Efficiency maps missing for flavours: {missing}")
        self._lookups = dict(lookups)

    @classmethod
    def from_hists(cls, hists: dict) -> "EfficiencyTable":
        """Build from 2-D ``hist.Hist`` objects with (pt, eta) axes."""
        lookups = {}
        for key in _FLAVOUR_KEYS:
            h = hists[key]
            edges = [np.asarray(axis.edges, dtype=float) for axis in h.axes]
            lookups[key] = dense_lookup(np.asarray(h.values(), dtype=float), edges)
        return cls(lookups)

    @classmethod
    def from_root(cls, path) -> "EfficiencyTable":
        """Read ``hist_eff_{b,c,uds,g}`` from a ROOT file.

        Callers sharing files between streams hold the ``ResourcePermit``.
        """
        import uproot

        with uproot.open(path) as f:
            hists = {key: f[BTAG_EFF_HISTOGRAMS[key]].to_hist() for key in _FLAVOUR_KEYS}
        logger.info("Loaded b-tagging efficiencies from %s", path)
        return cls.from_hists(hists)

    def efficiency(self, pt, eta, parent_id) -> float:
        lookup = self._lookups[_flavour_key(parent_id)]
        # Overflow in pt is folded into the last populated bin.
        capped_pt = min(BTAG_EFF_PT_CAP, float(pt))
        return float(lookup(np.array([capped_pt]), np.array([float(eta)]))[0])


# ---------------------------------------------------------------------------
# Scale factor database
# ---------------------------------------------------------------------------

class BTagDatabase:
    """Scale factors and efficiencies for one (algorithm, working point).

    Efficiencies come either from ``efficiency_table`` or, lazily, from
    ``efficiency_path`` when ``set_dataset`` is first called for a dataset.
    """

    def __init__(self, tagger: BTagger, efficiency_table: EfficiencyTable | None = None,
                 efficiency_path=None):
        self.tagger = tagger
        self.payload = BTagPayload.for_tagger(tagger)
        self._data = self.payload.data
        self._efficiency_table = efficiency_table
        self._efficiency_path = efficiency_path
        self._dataset_name = None

    def set_dataset(self, dataset, permit: ResourcePermit) -> None:
        """(Re)load efficiencies for ``dataset``; a no-op for the current one."""
        with permit.acquire():
            if dataset.name == self._dataset_name and self._efficiency_table is not None:
                return
            if self._efficiency_path is not None:
                self._efficiency_table = EfficiencyTable.from_root(self._efficiency_path)
            elif self._efficiency_table is None:
                raise ValueError(
                    f"No b-tagging efficiencies available for {self.tagger.text_code}; "
                    "provide an efficiency table or a path to one."
                )
            self._dataset_name = dataset.name

    def get_efficiency(self, jet) -> float:
        if abs(jet.eta) >= BTAG_ETA_MAX:
            return 0.0
        if self._efficiency_table is None:
            raise RuntimeError("b-tagging efficiencies requested before set_dataset().")
        return self._efficiency_table.efficiency(jet.pt, jet.eta, jet.parent_id)

    def get_scale_factor(self, jet, variation: SFVariation = SFVariation.CENTRAL) -> float:
        """Data/MC scale factor for ``jet``; 0 outside the tagging acceptance."""
        if abs(jet.eta) >= BTAG_ETA_MAX:
            return 0.0

        if abs(int(jet.parent_id)) in (4, 5):
            return self.tag_scale_factor(jet.pt, abs(int(jet.parent_id)) == 4, variation)
        return self.light_scale_factor(jet.pt, abs(jet.eta), variation)

    def tag_scale_factor(self, pt, is_charm, variation=SFVariation.CENTRAL) -> float:
        """Scale factor for a b (or c, with doubled uncertainty) jet."""
        pt_min, pt_max = BTAG_TAG_PT_RANGE
        unc_factor = 1.0
        if pt < pt_min:
            pt, unc_factor = pt_min, 2.0
        elif pt > pt_max:
            pt, unc_factor = pt_max, 2.0

        central = self._data.tag_sf(pt)
        if variation is SFVariation.CENTRAL:
            return central

        uncertainties = self._data.tag_uncertainties
        last_bin = min(len(BTAG_TAG_PT_BIN_EDGES), len(uncertainties)) - 1
        pt_bin = 0
        while pt_bin < last_bin and BTAG_TAG_PT_BIN_EDGES[pt_bin] < pt:
            pt_bin += 1

        if is_charm:
            unc_factor *= 2.0

        if variation is SFVariation.UP:
            return central + unc_factor * uncertainties[pt_bin]
        return central - unc_factor * uncertainties[pt_bin]

    def light_scale_factor(self, pt, abs_eta, variation=SFVariation.CENTRAL) -> float:
        """Scale factor for a light-flavour or gluon jet."""
        outer = self._data.mistag_outer_region
        if pt > BTAG_MISTAG_PT_MAX or (pt > BTAG_MISTAG_OUTER_PT_MAX and abs_eta > outer):
            # Extrapolation: evaluate at the edge and inflate the uncertainty.
            pt = BTAG_MISTAG_OUTER_PT_MAX if abs_eta > outer else BTAG_MISTAG_PT_MAX
            central = self.mistag_scale_factor(pt, abs_eta, SFVariation.CENTRAL)
            if variation is SFVariation.CENTRAL:
                return central
            if variation is SFVariation.UP:
                return 2 * self.mistag_scale_factor(pt, abs_eta, SFVariation.UP) + central
            return 2 * self.mistag_scale_factor(pt, abs_eta, SFVariation.DOWN) - central

        return self.mistag_scale_factor(pt, abs_eta, variation)

    def mistag_scale_factor(self, pt, abs_eta, variation=SFVariation.CENTRAL) -> float:
        """Evaluate the raw mistag fit. Raises ``EtaOutOfRangeError`` outside it."""
        for fit in self._data.mistag_fits:
            if abs_eta < fit.eta_max:
                break
        else:
            raise EtaOutOfRangeError(
                f"|eta| = {abs_eta} is outside the mistag fit range of {self.tagger.text_code}."
            )

        if variation is SFVariation.UP:
            coeffs = fit.high
        elif variation is SFVariation.DOWN:
            coeffs = fit.low
        else:
            coeffs = fit.mean
        return _poly(*coeffs)(pt)


ScaleFactorTable = BTagDatabase

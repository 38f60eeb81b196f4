"""
Tests for b-tagging: taggers, scale-factor parametrisations and efficiencies.

Critical functionality:
- Heavy-flavour SFs with binned uncertainties (pt clamping, charm doubling)
- Light-flavour SFs with high-pt extrapolation
- Tagging acceptance and fit-range errors
- Efficiency maps built from hist objects or a ROOT file
"""

import threading
from unittest.mock import patch

import hist
import numpy as np
import pytest
import uproot

from pecreader.btagging import (
    BTagAlgorithm,
    BTagDatabase,
    BTagger,
    BTagPayload,
    EfficiencyTable,
    EtaOutOfRangeError,
    ScaleFactorTable,
    SFVariation,
    WorkingPoint,
)
from pecreader.dataset import Dataset
from pecreader.physics_objects import Jet, p4_from_ptetaphim
from pecreader.resources import ResourcePermit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _jet(pt, eta, parent_id=5, csv=0.9):
    return Jet(p4_from_ptetaphim(pt, eta, 0.0, 5.0), btag={"CSV": csv}, parent_id=parent_id)


def _eff_hist(values):
    h = hist.Hist(
        hist.axis.Variable([20.0, 100.0, 400.0], name="pt"),
        hist.axis.Regular(2, -2.4, 2.4, name="eta"),
    )
    h.view()[:, :] = np.asarray(values, dtype=float)
    return h


def _eff_hists():
    return {
        "b": _eff_hist([[0.60, 0.70], [0.65, 0.75]]),
        "c": _eff_hist([[0.20, 0.20], [0.25, 0.25]]),
        "uds": _eff_hist([[0.01, 0.01], [0.02, 0.02]]),
        "g": _eff_hist([[0.03, 0.03], [0.04, 0.04]]),
    }


@pytest.fixture
def csvm():
    return BTagger(BTagAlgorithm.CSV, WorkingPoint.MEDIUM)


@pytest.fixture
def eff_table():
    return EfficiencyTable.from_hists(_eff_hists())


@pytest.fixture
def database(csvm, eff_table):
    return BTagDatabase(csvm, efficiency_table=eff_table)


def _csvm_central(pt):
    return 0.938887 + 0.00017124 * pt - 2.76366e-07 * pt * pt


# ---------------------------------------------------------------------------
# Tagger
# ---------------------------------------------------------------------------

class TestBTagger:
    def test_threshold_and_code(self, csvm):
        assert csvm.threshold == pytest.approx(0.679)
        assert csvm.text_code == "CSVM"

    def test_is_tagged(self, csvm):
        assert csvm.is_tagged(_jet(50.0, 0.0, csv=0.9))
        assert not csvm.is_tagged(_jet(50.0, 0.0, csv=0.5))

    def test_accepts_enum_values(self):
        tagger = BTagger("TCHP", "T")
        assert tagger.algorithm is BTagAlgorithm.TCHP
        assert tagger.text_code == "TCHPT"

    def test_missing_discriminator(self):
        tagger = BTagger(BTagAlgorithm.TCHP, WorkingPoint.TIGHT)
        with pytest.raises(KeyError, match="TCHP"):
            tagger.is_tagged(_jet(50.0, 0.0))


# ---------------------------------------------------------------------------
# Scale factors
# ---------------------------------------------------------------------------

class TestPayloadSelection:
    def test_unsupported_combination(self):
        with pytest.raises(ValueError, match="TCHPL"):
            BTagDatabase(BTagger(BTagAlgorithm.TCHP, WorkingPoint.LOOSE))

    @pytest.mark.parametrize("payload", list(BTagPayload))
    def test_every_payload_constructs(self, payload):
        algorithm, working_point = payload.value
        database = BTagDatabase(BTagger(algorithm, working_point))
        assert database.payload is payload

    def test_alias(self):
        assert ScaleFactorTable is BTagDatabase


class TestHeavyFlavourScaleFactor:
    def test_variations_bracket_central(self, database):
        jet = _jet(50.0, 1.0, parent_id=5)
        central = database.get_scale_factor(jet, SFVariation.CENTRAL)
        up = database.get_scale_factor(jet, SFVariation.UP)
        down = database.get_scale_factor(jet, SFVariation.DOWN)
        assert down < central < up
        assert central == pytest.approx(_csvm_central(50.0))

    def test_uncertainty_bin(self, database):
        # 40 < pt <= 50 is the third bin.
        up = database.tag_scale_factor(50.0, False, SFVariation.UP)
        assert up == pytest.approx(_csvm_central(50.0) + 0.0223227)

    def test_charm_doubles_uncertainty(self, database):
        central = database.tag_scale_factor(50.0, True)
        up = database.tag_scale_factor(50.0, True, SFVariation.UP)
        assert up - central == pytest.approx(2 * 0.0223227)

    def test_charm_sign_of_parent_id_ignored(self, database):
        assert database.get_scale_factor(_jet(50.0, 1.0, parent_id=-4), SFVariation.UP) == \
            pytest.approx(database.tag_scale_factor(50.0, True, SFVariation.UP))

    def test_low_pt_clamped(self, database):
        assert database.tag_scale_factor(10.0, False) == pytest.approx(_csvm_central(20.0))
        down = database.tag_scale_factor(10.0, False, SFVariation.DOWN)
        assert down == pytest.approx(_csvm_central(20.0) - 2 * 0.0415707)

    def test_high_pt_clamped(self, database):
        up = database.tag_scale_factor(1000.0, False, SFVariation.UP)
        assert up == pytest.approx(_csvm_central(800.0) + 2 * 0.0596716)

    def test_short_uncertainty_table(self):
        database = BTagDatabase(BTagger(BTagAlgorithm.CSVSLV1, WorkingPoint.MEDIUM))
        central = database.tag_scale_factor(700.0, False)
        up = database.tag_scale_factor(700.0, False, SFVariation.UP)
        assert up - central == pytest.approx(0.0438219)


class TestLightFlavourScaleFactor:
    def test_in_range_uses_fit(self, database):
        sf = database.light_scale_factor(100.0, 0.5)
        expected = 1.07541 + 0.00231827 * 100 - 4.74249e-06 * 1e4 + 2.70862e-09 * 1e6
        assert sf == pytest.approx(expected)

    def test_eta_bins(self, database):
        assert database.mistag_scale_factor(100.0, 0.5) != database.mistag_scale_factor(100.0, 1.0)

    def test_variations_bracket_central(self, database):
        jet = _jet(80.0, 1.2, parent_id=21)
        up = database.get_scale_factor(jet, SFVariation.UP)
        down = database.get_scale_factor(jet, SFVariation.DOWN)
        assert down < database.get_scale_factor(jet) < up

    def test_outer_region_extrapolation(self, database):
        central = database.light_scale_factor(750.0, 2.0)
        assert central == pytest.approx(database.mistag_scale_factor(700.0, 2.0))
        up = database.light_scale_factor(750.0, 2.0, SFVariation.UP)
        assert up == pytest.approx(
            2 * database.mistag_scale_factor(700.0, 2.0, SFVariation.UP) + central
        )

    def test_central_region_not_extrapolated_below_800(self, database):
        assert database.light_scale_factor(750.0, 0.5) == pytest.approx(
            database.mistag_scale_factor(750.0, 0.5)
        )

    def test_very_high_pt(self, database):
        down = database.light_scale_factor(900.0, 0.5, SFVariation.DOWN)
        central = database.mistag_scale_factor(800.0, 0.5)
        assert down == pytest.approx(
            2 * database.mistag_scale_factor(800.0, 0.5, SFVariation.DOWN) - central
        )

    @pytest.mark.parametrize("abs_eta", [2.4, 2.5])
    def test_outside_fit_range_raises(self, database, abs_eta):
        with pytest.raises(EtaOutOfRangeError):
            database.mistag_scale_factor(100.0, abs_eta)

    def test_out_of_range_is_value_error(self):
        assert issubclass(EtaOutOfRangeError, ValueError)


class TestAcceptance:
    @pytest.mark.parametrize("parent_id", [5, 4, 1, 21])
    def test_scale_factor_zero_outside_acceptance(self, database, parent_id):
        assert database.get_scale_factor(_jet(50.0, 2.5, parent_id=parent_id)) == 0.0

    def test_efficiency_zero_outside_acceptance(self, database):
        assert database.get_efficiency(_jet(50.0, -2.4)) == 0.0


# ---------------------------------------------------------------------------
# Efficiencies
# ---------------------------------------------------------------------------

class TestEfficiencyTable:
    def test_lookup_by_flavour(self, eff_table):
        assert eff_table.efficiency(50.0, -1.0, 5) == pytest.approx(0.60)
        assert eff_table.efficiency(50.0, 1.0, -5) == pytest.approx(0.70)
        assert eff_table.efficiency(150.0, 1.0, 4) == pytest.approx(0.25)
        assert eff_table.efficiency(50.0, 0.3, 21) == pytest.approx(0.03)
        assert eff_table.efficiency(50.0, 0.3, 2) == pytest.approx(0.01)
        assert eff_table.efficiency(50.0, 0.3, 0) == pytest.approx(0.01)

    def test_pt_capped(self, eff_table):
        assert eff_table.efficiency(2000.0, 1.0, 5) == pytest.approx(0.75)

    def test_missing_flavour(self):
        hists = _eff_hists()
        lookups = EfficiencyTable.from_hists(hists)._lookups
        del lookups["g"]
        with pytest.raises(ValueError, match="g"):
            EfficiencyTable(lookups)

    def test_from_root(self, tmp_path):
        path = tmp_path / "eff_CSVM.root"
        with uproot.recreate(str(path)) as f:
            for key, h in _eff_hists().items():
                f[f"hist_eff_{key}"] = h

        table = EfficiencyTable.from_root(path)
        assert table.efficiency(50.0, 1.0, 5) == pytest.approx(0.70)


class TestBTagDatabaseDataset:
    def test_requires_efficiencies(self, csvm):
        database = BTagDatabase(csvm)
        with pytest.raises(ValueError, match="efficienc"):
            database.set_dataset(Dataset("ttbar"), ResourcePermit())

    def test_efficiency_before_set_dataset(self, csvm):
        with pytest.raises(RuntimeError):
            BTagDatabase(csvm).get_efficiency(_jet(50.0, 0.5))

    def test_loaded_once_per_dataset(self, csvm, eff_table):
        database = BTagDatabase(csvm, efficiency_path="eff_CSVM.root")
        permit = ResourcePermit()
        with patch.object(EfficiencyTable, "from_root", return_value=eff_table) as mock_load:
            database.set_dataset(Dataset("ttbar"), permit)
            database.set_dataset(Dataset("ttbar"), permit)
            assert mock_load.call_count == 1
            database.set_dataset(Dataset("Wjets"), permit)
            assert mock_load.call_count == 2
        assert database.get_efficiency(_jet(50.0, -1.0)) == pytest.approx(0.60)

    def test_loaded_under_permit(self, csvm, eff_table):
        database = BTagDatabase(csvm, efficiency_path="eff_CSVM.root")
        permit = ResourcePermit()
        held = []

        def load(path):
            held.append(permit.locked)
            return eff_table

        with patch.object(EfficiencyTable, "from_root", side_effect=load):
            database.set_dataset(Dataset("ttbar"), permit)
        assert held == [True]
        assert not permit.locked

    def test_shared_between_threads(self, csvm, eff_table):
        database = BTagDatabase(csvm, efficiency_path="eff_CSVM.root")
        permit = ResourcePermit()
        dataset = Dataset("ttbar")
        with patch.object(EfficiencyTable, "from_root", return_value=eff_table) as mock_load:
            threads = [
                threading.Thread(target=database.set_dataset, args=(dataset, permit))
                for _ in range(8)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        assert mock_load.call_count == 1

    def test_table_given_upfront(self, database):
        database.set_dataset(Dataset("ttbar"), ResourcePermit())
        assert database.get_efficiency(_jet(150.0, 1.0, parent_id=4)) == pytest.approx(0.25)

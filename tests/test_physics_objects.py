"""Tests for physics objects, datasets and the resource permit."""

import pytest

from pecreader.dataset import Dataset, DatasetFile, Process
from pecreader.physics_objects import (
    EventID,
    GenParticle,
    Jet,
    p4_from_ptetaphim,
    scale_p4,
)
from pecreader.resources import ResourcePermit


class TestFourMomentum:
    def test_scale_keeps_direction(self):
        p4 = p4_from_ptetaphim(40.0, 1.2, -0.4, 6.0)
        scaled = scale_p4(p4, 1.1)
        assert scaled.pt == pytest.approx(44.0)
        assert scaled.mass == pytest.approx(6.6)
        assert scaled.eta == pytest.approx(1.2)
        assert scaled.phi == pytest.approx(-0.4)
        assert scaled.E == pytest.approx(1.1 * p4.E)

    def test_jets_order_by_pt(self):
        jets = [Jet(p4_from_ptetaphim(pt, 0.0, 0.0, 1.0)) for pt in (30.0, 90.0, 55.0)]
        assert [j.pt for j in sorted(jets, reverse=True)] == pytest.approx([90.0, 55.0, 30.0])

    def test_gen_particles_compare_by_identity(self):
        p4 = p4_from_ptetaphim(10.0, 0.0, 0.0, 0.0)
        a, b = GenParticle(p4, pdg_id=21), GenParticle(p4, pdg_id=21)
        assert a != b
        assert "pdg_id=21" in repr(a)


class TestEventID:
    def test_str(self):
        assert str(EventID(190456, 12, 3001)) == "190456:12:3001"

    def test_hashable(self):
        assert len({EventID(1, 1, 1), EventID(1, 1, 1)}) == 1


class TestDataset:
    def test_add_file(self):
        dataset = Dataset("t-tchan", process=Process.T_TCHAN)
        dataset.add_file("/store/t-tchan_p1.root", xsec=56.4, n_events=3915598)
        (f,) = dataset.files
        assert f == DatasetFile("/store/t-tchan_p1.root", 56.4, 3915598)

    def test_simulation_needs_event_count(self):
        with pytest.raises(ValueError):
            Dataset("ttbar").add_file("ttbar.root", xsec=107.7, n_events=0)

    def test_data_ignores_event_count(self):
        dataset = Dataset("SingleMu", process=Process.DATA, is_mc=False)
        dataset.add_file("SingleMu.root", n_events=0)
        assert len(dataset.files) == 1

    def test_flags(self):
        dataset = Dataset("Wjets", process=Process.WJETS)
        assert not dataset.has_flag("WjetsKeep0p1p")
        dataset.set_flag("WjetsKeep0p1p")
        assert dataset.has_flag("WjetsKeep0p1p")


class TestResourcePermit:
    def test_acquire(self):
        permit = ResourcePermit()
        with permit.acquire() as held:
            assert held is permit
            assert permit.locked
        assert not permit.locked

    def test_released_on_error(self):
        permit = ResourcePermit()
        with pytest.raises(OSError):
            with permit.acquire():
                raise OSError("cannot open file")
        assert not permit.locked

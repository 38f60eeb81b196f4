"""Neutrino reconstruction from the W-boson mass constraint."""

import math

from pecreader.analysis_config import MASSES
from pecreader.physics_objects import Candidate, p4_from_ptetaphim


def solve_nu_pz(lepton_p4, met_pt, met_phi, m_w=None):
    """Longitudinal momentum of the neutrino such that m(lepton + nu) = m_W.

    The quadratic has two roots; the one with the smaller absolute value is
    returned. If the discriminant is negative (MET resolution pushes the
    transverse mass above m_W), the real part of the complex roots is used.
    """
    if m_w is None:
        m_w = MASSES["w_boson"]

    px_n = met_pt * math.cos(met_phi)
    py_n = met_pt * math.sin(met_phi)
    px_l, py_l, pz_l, e_l = lepton_p4.px, lepton_p4.py, lepton_p4.pz, lepton_p4.E

    mu_w = (m_w ** 2) / 2.0 + px_l * px_n + py_l * py_n
    a = e_l ** 2 - pz_l ** 2
    b = -2.0 * mu_w * pz_l
    c = e_l ** 2 * (px_n ** 2 + py_n ** 2) - mu_w ** 2
    disc = b ** 2 - 4.0 * a * c

    if disc < 0.0:
        return -b / (2.0 * a)

    sqrt_disc = math.sqrt(disc)
    pz1 = (-b + sqrt_disc) / (2.0 * a)
    pz2 = (-b - sqrt_disc) / (2.0 * a)
    return pz1 if abs(pz1) < abs(pz2) else pz2


def reconstruct_neutrino(tight_leptons, met, solver=solve_nu_pz):
    """Build the neutrino candidate from the leading tight lepton and MET.

    ``met`` is a ``Candidate``; the neutrino shares its pt and phi. MET with
    zero pt leaves the neutrino direction undefined and raises ``ValueError``.
    """
    if not tight_leptons:
        raise ValueError("Neutrino reconstruction requires at least one tight lepton.")

    met_pt, met_phi = met.pt, met.phi
    if not met_pt > 0.0:
        raise ValueError(f"Neutrino reconstruction requires positive MET pt, got {met_pt}.")

    pz = solver(tight_leptons[0].p4, met_pt, met_phi)
    eta = math.asinh(pz / met_pt)
    return Candidate(p4_from_ptetaphim(met_pt, eta, met_phi, 0.0))

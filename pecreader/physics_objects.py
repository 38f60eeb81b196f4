"""Physics objects handed to downstream consumers.

Four-momenta are ``vector`` Lorentz objects in (pt, eta, phi, mass)
coordinates. Objects are rebuilt for every event and never shared between
events.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import vector


def p4_from_ptetaphim(pt, eta, phi, mass):
    """Build a Lorentz vector from (pt, eta, phi, mass)."""
    return vector.obj(pt=float(pt), eta=float(eta), phi=float(phi), mass=float(mass))


def scale_p4(p4, factor):
    """Return ``p4`` with every component multiplied by ``factor``.

    Direction is preserved, so pt and mass scale while eta and phi stay put.
    """
    return p4_from_ptetaphim(p4.pt * factor, p4.eta, p4.phi, p4.mass * factor)


@dataclass(frozen=True)
class EventID:
    run: int
    lumi: int
    event: int

    def __str__(self) -> str:
        return f"{self.run}:{self.lumi}:{self.event}"


class Flavour(enum.Enum):
    ELECTRON = "electron"
    MUON = "muon"
    TAU = "tau"
    UNKNOWN = "unknown"


@dataclass
class Candidate:
    """Bare four-momentum wrapper used for MET and the reconstructed neutrino."""

    p4: object

    @property
    def pt(self) -> float:
        return self.p4.pt

    @property
    def eta(self) -> float:
        return self.p4.eta

    @property
    def phi(self) -> float:
        return self.p4.phi

    @property
    def mass(self) -> float:
        return self.p4.mass

    def __lt__(self, other):
        return self.pt < other.pt


@dataclass
class Lepton(Candidate):
    """A reconstructed charged lepton.

    Attributes:
        flavour: ``Flavour`` of the lepton.
        rel_iso: relative isolation.
        db: transverse impact parameter w.r.t. the beam spot (cm).
        charge: electric charge, +1 or -1.
    """

    flavour: Flavour = Flavour.UNKNOWN
    rel_iso: float = 0.0
    db: float = 0.0
    charge: int = 0


@dataclass
class Jet(Candidate):
    """A reconstructed jet.

    ``btag`` maps an algorithm name (``"CSV"``, ``"TCHP"``, ...) to the
    discriminator value. ``parent_id`` is the flavour of the matched parton
    and is only filled in simulation (0 otherwise).
    """

    btag: dict = field(default_factory=dict)
    parent_id: int = 0
    charge: float | None = None
    pull_angle: float | None = None

    def discriminator(self, algorithm: str) -> float:
        try:
            return self.btag[algorithm]
        except KeyError:
            raise KeyError(f"Jet has no b-tagging discriminator for algorithm '{algorithm}'.") from None


@dataclass(eq=False)
class GenParticle(Candidate):
    """Generator-level particle from the hard interaction.

    Mother/daughter links point to other ``GenParticle`` objects of the same
    event.
    """

    pdg_id: int = 0
    mothers: list = field(default_factory=list)
    daughters: list = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"GenParticle(pdg_id={self.pdg_id}, pt={self.pt:.3g}, "
            f"n_mothers={len(self.mothers)}, n_daughters={len(self.daughters)})"
        )

"""Dataset description: an ordered list of files plus sample metadata."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Process(enum.Enum):
    """Physics process a dataset describes. Only a few are special-cased."""

    DATA = "data"
    TTBAR = "ttbar"
    T_TCHAN = "t-tchan"
    T_TW = "t-tW"
    T_SCHAN = "t-schan"
    WJETS = "Wjets"
    ZJETS = "Zjets"
    DIBOSON = "diboson"
    QCD = "QCD"
    TTH = "tth"
    THQ = "thq"
    UNDEFINED = "undefined"


@dataclass(frozen=True)
class DatasetFile:
    """One input file.

    ``n_events`` is the number of generated events used to normalise the
    cross-section (the whole sample, not only this file).
    """

    path: str
    xsec: float = 1.0
    n_events: int = 1


@dataclass
class Dataset:
    """A set of files sharing process, data type and processing flags.

    Flags are free-form strings that switch on dataset-specific treatment,
    e.g. ``"WjetsKeep0p1p"`` to split the inclusive W+jets sample.
    """

    name: str
    process: Process = Process.UNDEFINED
    is_mc: bool = True
    files: list[DatasetFile] = field(default_factory=list)
    flags: set[str] = field(default_factory=set)
    campaign: str | None = None

    def add_file(self, path, xsec=1.0, n_events=1):
        if self.is_mc and n_events <= 0:
            raise ValueError(f"Dataset '{self.name}': n_events must be positive, got {n_events}.")
        self.files.append(DatasetFile(path=str(path), xsec=float(xsec), n_events=int(n_events)))

    def set_flag(self, flag: str) -> None:
        self.flags.add(flag)

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

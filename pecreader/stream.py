"""Event-by-event iteration over the files of a dataset.

``EventStream`` opens the files of a dataset one after another, reads rows,
applies the trigger gate, builds and selects physics objects and computes
event weights. Only events that pass every step and carry a non-zero
central weight are exposed.

Typical use::

    stream = EventStream(dataset, StreamConfig(event_selection=sel))
    for event in stream.events():
        print(event.event_id, event.central_weight)

or, with explicit control::

    while stream.open_next_file():
        while stream.read_next_event():
            ...

Several streams may run in parallel threads over disjoint file lists as long
as they share one ``ResourcePermit``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from pecreader.builder import GENERAL, ObjectBuilder
from pecreader.io import RawRow, UprootColumnReader
from pecreader.neutrino import solve_nu_pz
from pecreader.physics_objects import EventID, GenParticle, p4_from_ptetaphim
from pecreader.resources import ResourcePermit
from pecreader.systematics import SystType, SystVariation, WeightSource
from pecreader.weights import BTagWeight, WeightEngine

logger = logging.getLogger(__name__)

EVENT_ID = "event_id"
TRIGGER = "trigger"

_HARD_PARTICLE_BRANCHES = (
    "hardPartPdgId", "hardPartFirstMother", "hardPartLastMother",
    "hardPartPt", "hardPartEta", "hardPartPhi", "hardPartMass",
)


class StreamStateError(RuntimeError):
    """The stream was used in a way its current state does not allow."""


@dataclass
class StreamConfig:
    """Optional modules and switches of an ``EventStream``."""

    trigger_selection: object = None
    event_selection: object = None
    btagger: object = None
    btag_database: object = None
    pileup_reweighter: object = None
    read_hard_interaction: bool = False
    systematics: SystVariation = field(default_factory=SystVariation)
    neutrino_solver: object = solve_nu_pz


@dataclass
class EventSnapshot:
    """The current event as seen by consumers.

    Valid until the next call to ``read_next_event``.
    """

    event_id: EventID
    tight_leptons: tuple
    loose_leptons: tuple
    jets: tuple
    additional_jets: tuple
    met: object
    neutrino: object
    n_primary_vertices: int
    central_weight: float | None = None
    syst_weights: dict = field(default_factory=dict)
    hard_gen_particles: tuple | None = None

    @property
    def leptons(self):
        return self.tight_leptons


class EventStream:
    """Reads and reconstructs the events of one dataset.

    Args:
        dataset: ``Dataset`` to read.
        config: optional ``StreamConfig``; modules can also be set with the
            ``set_*`` methods before the first file is opened.
        reader: ``ColumnReader`` to use, an ``UprootColumnReader`` by default.
        permit: ``ResourcePermit`` shared with other streams; a private one
            is created if omitted.
        files: subset of ``dataset.files`` to read, for splitting a dataset
            between workers.
    """

    def __init__(self, dataset, config: StreamConfig | None = None, reader=None,
                 permit: ResourcePermit | None = None, files=None):
        self.dataset = dataset
        self.files = list(dataset.files if files is None else files)
        self.reader = reader if reader is not None else UprootColumnReader()
        self.permit = permit if permit is not None else ResourcePermit()

        self._config = StreamConfig()
        self._initialized = False
        self._builder = None
        self._weight_engine = None

        self._file_index = 0
        self._current_file = None
        self._n_rows = 0
        self._cursor = 0
        self._row = RawRow()
        self._event = None

        if config is not None:
            self.configure(config)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _check_configurable(self):
        if self._initialized:
            raise StreamStateError("The stream cannot be reconfigured after the first file has been opened.")

    def configure(self, config: StreamConfig) -> None:
        self._check_configurable()
        self.set_trigger_selection(config.trigger_selection)
        self.set_event_selection(config.event_selection)
        if config.btagger is not None and config.btag_database is not None:
            self.set_btagging(config.btagger, config.btag_database)
        self.set_pileup_reweighter(config.pileup_reweighter)
        self.set_read_hard_interaction(config.read_hard_interaction)
        self.set_systematics(config.systematics)
        self.set_neutrino_solver(config.neutrino_solver)

    def set_trigger_selection(self, trigger_selection) -> None:
        self._check_configurable()
        self._config.trigger_selection = trigger_selection

    def set_event_selection(self, event_selection) -> None:
        self._check_configurable()
        self._config.event_selection = event_selection

    def set_btagging(self, btagger, database) -> None:
        self._check_configurable()
        self._config.btagger = btagger
        self._config.btag_database = database

    def set_pileup_reweighter(self, reweighter) -> None:
        self._check_configurable()
        self._config.pileup_reweighter = reweighter

    def set_read_hard_interaction(self, flag: bool = True) -> None:
        self._check_configurable()
        self._config.read_hard_interaction = bool(flag)

    def set_systematics(self, syst) -> None:
        """Accepts a ``SystVariation`` or a ``(kind, direction)`` pair."""
        self._check_configurable()
        if not isinstance(syst, SystVariation):
            kind, direction = syst
            syst = SystVariation(SystType(kind), direction)
        self._config.systematics = syst

    def set_neutrino_solver(self, solver) -> None:
        self._check_configurable()
        self._config.neutrino_solver = solver

    @property
    def systematics(self) -> SystVariation:
        return self._config.systematics

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _initialize(self):
        cfg = self._config
        is_mc = self.dataset.is_mc

        if cfg.trigger_selection is None:
            logger.warning("No trigger selection has been specified; every event passes the trigger.")
        if cfg.event_selection is None:
            logger.warning("No event selection has been specified.")

        btag_weight = None
        pileup_reweighter = None
        if is_mc:
            if cfg.btag_database is None:
                logger.warning(
                    "No b-tagging scale factors have been specified. Simulation will not be "
                    "reweighted for this effect."
                )
            else:
                cfg.btag_database.set_dataset(self.dataset, self.permit)
                btag_weight = BTagWeight(cfg.btagger, cfg.btag_database)
            if cfg.pileup_reweighter is None:
                logger.warning(
                    "No pile-up reweighting has been specified. Simulation will not be "
                    "reweighted for this effect."
                )
            else:
                pileup_reweighter = cfg.pileup_reweighter

        required_btag = (cfg.btagger.algorithm.value,) if cfg.btagger is not None else ()
        self._builder = ObjectBuilder(
            self.dataset,
            cfg.systematics,
            event_selection=cfg.event_selection,
            neutrino_solver=cfg.neutrino_solver,
            required_btag_algorithms=required_btag,
        )
        self._weight_engine = WeightEngine(
            cfg.systematics,
            trigger_selection=cfg.trigger_selection,
            pileup_reweighter=pileup_reweighter,
            btag_weight=btag_weight,
        )
        self._file_index = 0
        self._initialized = True

    def open_next_file(self) -> bool:
        """Close the current file and open the next one.

        Returns False once all files have been read.
        """
        if not self._initialized:
            self._initialize()

        self._close_file()
        if self._file_index >= len(self.files):
            return False

        dataset_file = self.files[self._file_index]
        self._file_index += 1
        self._open_file(dataset_file)
        return True

    def _open_file(self, dataset_file):
        cfg = self._config
        is_mc = self.dataset.is_mc

        if is_mc:
            self._weight_engine.set_cross_section_weight(dataset_file.xsec / dataset_file.n_events)
        else:
            self._weight_engine.set_cross_section_weight(1.0)

        with self.permit.acquire():
            self.reader.open(dataset_file.path)
        self._current_file = dataset_file
        logger.info("Opened %s", dataset_file.path)

        reader = self.reader
        reader.bind("run", "run", EVENT_ID)
        reader.bind("lumi", "lumi", EVENT_ID)
        reader.bind("event", "event", EVENT_ID)
        if cfg.trigger_selection is not None:
            reader.bind("triggerNames", "names", TRIGGER, optional=True)
            reader.bind("hasFired", "hasFired", TRIGGER)

        self._builder.bind_columns(reader)

        if is_mc and cfg.read_hard_interaction:
            for branch in _HARD_PARTICLE_BRANCHES:
                reader.bind(branch, branch, GENERAL)

        self._n_rows = reader.num_entries
        self._cursor = 0
        self._row.clear()

        if cfg.trigger_selection is not None:
            cfg.trigger_selection.new_file(not is_mc)

    def _close_file(self):
        if self._current_file is None:
            return
        with self.permit.acquire():
            self.reader.close()
        self._current_file = None

    def close(self) -> None:
        self._close_file()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def read_next_event(self) -> bool:
        """Advance to the next accepted event of the current file.

        Returns False when the rows of the current file are exhausted.
        """
        if self._current_file is None:
            raise StreamStateError(
                "No file is open; open_next_file() must be called before read_next_event()."
            )

        cfg = self._config
        reader, row = self.reader, self._row

        while self._cursor < self._n_rows:
            index = self._cursor

            row.update(reader.read(index, EVENT_ID))
            event_id = EventID(int(row["run"]), int(row["lumi"]), int(row["event"]))

            if cfg.trigger_selection is not None:
                row.update(reader.read(index, TRIGGER))
                if not cfg.trigger_selection.pass_trigger(event_id, row.get("triggerNames"), row["hasFired"]):
                    self._cursor += 1
                    continue

            row.update(reader.read(index, GENERAL))
            self._cursor += 1

            built = self._builder.build(
                row, event_id=event_id, file_name=self._current_file.path, row_index=index
            )
            if built is None:
                continue

            snapshot = EventSnapshot(
                event_id=event_id,
                tight_leptons=tuple(built.tight_leptons),
                loose_leptons=tuple(built.loose_leptons),
                jets=tuple(built.jets),
                additional_jets=tuple(built.additional_jets),
                met=built.met,
                neutrino=built.neutrino,
                n_primary_vertices=int(row["PVSize"]),
            )
            weights = self._weight_engine.compute(
                built.jets, row.get("PUTrueNumInteractions", 0.0), event=snapshot
            )
            if weights.central == 0.0:
                continue

            hard_particles = None
            if cfg.read_hard_interaction:
                hard_particles = tuple(self._parse_hard_interaction(row)) if self.dataset.is_mc else ()

            self._event = replace(
                snapshot,
                central_weight=weights.central,
                syst_weights={source: tuple(pairs) for source, pairs in weights.variations.items()},
                hard_gen_particles=hard_particles,
            )
            return True

        return False

    def events(self):
        """Yield a snapshot of every accepted event in the remaining files."""
        while self.open_next_file():
            while self.read_next_event():
                yield self._event

    @staticmethod
    def _parse_hard_interaction(row):
        particles = [
            GenParticle(
                p4_from_ptetaphim(pt, eta, phi, mass),
                pdg_id=int(pdg_id),
            )
            for pdg_id, pt, eta, phi, mass in zip(
                row["hardPartPdgId"], row["hardPartPt"], row["hardPartEta"],
                row["hardPartPhi"], row["hardPartMass"],
            )
        ]

        n = len(particles)
        for i, particle in enumerate(particles):
            first, last = int(row["hardPartFirstMother"][i]), int(row["hardPartLastMother"][i])
            # A mother is linked once even when it is both first and last mother.
            for i_mother in dict.fromkeys((first, last)):
                if 0 <= i_mother < n:
                    mother = particles[i_mother]
                    particle.mothers.append(mother)
                    mother.daughters.append(particle)
        return particles

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _current(self) -> EventSnapshot:
        if self._event is None:
            raise StreamStateError("No event has been read yet; call read_next_event() first.")
        return self._event

    @property
    def snapshot(self) -> EventSnapshot:
        return self._current()

    @property
    def event_id(self) -> EventID:
        return self._current().event_id

    @property
    def leptons(self):
        """Tight leptons."""
        return self._current().tight_leptons

    @property
    def loose_leptons(self):
        return self._current().loose_leptons

    @property
    def jets(self):
        """Analysis jets, sorted by decreasing pt."""
        return self._current().jets

    @property
    def additional_jets(self):
        return self._current().additional_jets

    @property
    def met(self):
        return self._current().met

    @property
    def neutrino(self):
        return self._current().neutrino

    @property
    def n_primary_vertices(self) -> int:
        return self._current().n_primary_vertices

    @property
    def central_weight(self) -> float:
        return self._current().central_weight

    def syst_weights(self, source) -> tuple:
        """Alternative weights for ``source``; empty if its module is not set."""
        event = self._current()
        if self._config.systematics.kind is not SystType.WEIGHT_ONLY:
            raise StreamStateError(
                "Weight variations were not requested; set WeightOnly systematics to access them."
            )
        try:
            source = WeightSource(source)
        except ValueError:
            raise ValueError(f"Unsupported weight variation source: {source!r}") from None
        return event.syst_weights.get(source, ())

    @property
    def hard_gen_particles(self):
        if not self._config.read_hard_interaction:
            raise StreamStateError(
                "Generator particles of the hard interaction were not requested; "
                "call set_read_hard_interaction() before opening the first file."
            )
        return self._current().hard_gen_particles

"""Print the reconstructed content of the first few events of a dataset.

Example::

    python bin/dump_events.py ttbar-semilep_p1.root ttbar-semilep_p2.root \\
        --process ttbar --xsec 107.7 --n-events 24953451 \\
        --btag CSV M --btag-eff data/BTag/eff_CSVM.root \\
        --muon-threshold 26 --jet-bin 2 1 --jet-bin 3 1 --jet-bin 3 2
"""

import argparse
import logging
import sys

from pecreader.btagging import BTagAlgorithm, BTagDatabase, BTagger, WorkingPoint
from pecreader.dataset import Dataset, Process
from pecreader.physics_objects import Flavour
from pecreader.selection import GenericEventSelection
from pecreader.stream import EventStream, StreamConfig
from pecreader.systematics import SystType, SystVariation
from pecreader.weights import PileUpReweighter

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _build_dataset(args):
    dataset = Dataset(
        name=args.name or Process(args.process).value,
        process=Process(args.process),
        is_mc=not args.data,
        campaign=args.campaign,
    )
    for path in args.files:
        dataset.add_file(path, xsec=args.xsec, n_events=args.n_events)
    for flag in args.flag:
        dataset.set_flag(flag)
    return dataset


def _build_config(args):
    config = StreamConfig(read_hard_interaction=args.read_hard_interaction)

    tagger = None
    if args.btag:
        algorithm, working_point = args.btag
        tagger = BTagger(BTagAlgorithm(algorithm), WorkingPoint(working_point))
        if args.btag_eff:
            config.btagger = tagger
            config.btag_database = BTagDatabase(tagger, efficiency_path=args.btag_eff)

    selection = GenericEventSelection(args.jet_pt, tagger)
    for pt in args.muon_threshold:
        selection.add_lepton_threshold(Flavour.MUON, pt)
    for pt in args.electron_threshold:
        selection.add_lepton_threshold(Flavour.ELECTRON, pt)
    for n_jets, n_tags in args.jet_bin:
        selection.add_jet_tag_bin(n_jets, n_tags)
    config.event_selection = selection

    if args.pileup:
        json_path, correction_name = args.pileup
        config.pileup_reweighter = PileUpReweighter(json_path, correction_name)

    if args.syst:
        kind, direction = args.syst
        config.systematics = SystVariation(SystType(kind), int(direction))
    return config


def _print_event(i, event):
    print(f"Event {i} ({event.event_id})")
    print("Tight leptons:", " ".join(
        f"[pt: {lep.pt:.2f}, iso: {lep.rel_iso:.3f}, dB: {lep.db:.4f}]" for lep in event.tight_leptons
    ))
    print("Analysis jets' pts:", " ".join(f"{jet.pt:.2f}" for jet in event.jets))
    print("Additional jets' pts:", " ".join(f"{jet.pt:.2f}" for jet in event.additional_jets))
    print(f"Neutrino's pt: {event.neutrino.pt:.2f}, pz: {event.neutrino.p4.pz:.2f}")
    if event.hard_gen_particles is not None:
        for particle in event.hard_gen_particles:
            print(f"  PDG ID: {particle.pdg_id}, # mothers: {len(particle.mothers)}, "
                  f"# daughters: {len(particle.daughters)}")
    print(f"Event weight: {event.central_weight:.6g}")
    print()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="dump_events.py",
        description="Print reconstructed events of a dataset.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("files", nargs="+", help="Input PlainEventContent ROOT files")
    parser.add_argument("--name", default=None, help="Dataset name (default: process name)")
    parser.add_argument("--process", default=Process.UNDEFINED.value,
                        choices=[p.value for p in Process], help="Physics process of the dataset")
    parser.add_argument("--data", action="store_true", help="Input is real data")
    parser.add_argument("--xsec", type=float, default=1.0, help="Cross-section (pb)")
    parser.add_argument("--n-events", type=int, default=1, help="Number of generated events")
    parser.add_argument("--campaign", default=None, help="Production campaign of the files")
    parser.add_argument("--flag", action="append", default=[], help="Dataset flag (repeatable)")
    parser.add_argument("--max-events", type=int, default=10, help="Number of events to print")
    parser.add_argument("--btag", nargs=2, metavar=("ALGO", "WP"), default=None,
                        help="b-tagging algorithm and working point, e.g. CSV M")
    parser.add_argument("--btag-eff", default=None, help="ROOT file with b-tagging efficiencies")
    parser.add_argument("--pileup", nargs=2, metavar=("JSON", "CORRECTION"), default=None,
                        help="correctionlib file and correction name for pile-up weights")
    parser.add_argument("--muon-threshold", type=float, action="append", default=[],
                        help="Require one tight muon above this pt (repeatable)")
    parser.add_argument("--electron-threshold", type=float, action="append", default=[],
                        help="Require one tight electron above this pt (repeatable)")
    parser.add_argument("--jet-pt", type=float, default=30.0, help="Analysis jet pt threshold")
    parser.add_argument("--jet-bin", type=int, nargs=2, action="append", default=[],
                        metavar=("NJETS", "NTAGS"), help="Allowed (jets, tags) bin (repeatable)")
    parser.add_argument("--syst", nargs=2, metavar=("KIND", "DIRECTION"), default=None,
                        help="Systematic variation, e.g. JetEnergyScale 1 or WeightOnly 0")
    parser.add_argument("--read-hard-interaction", action="store_true",
                        help="Also print generator particles of the hard interaction")
    args = parser.parse_args(argv)

    if args.jet_bin and not args.btag:
        parser.error("--jet-bin requires --btag")

    dataset = _build_dataset(args)
    stream = EventStream(dataset, _build_config(args))

    n_printed = 0
    with stream:
        for event in stream.events():
            _print_event(n_printed, event)
            n_printed += 1
            if n_printed >= args.max_events:
                break

    logger.info("Printed %d event(s) from %d file(s).", n_printed, len(dataset.files))
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Coin Flip Simulator — headless host (Layer 3)

Drives CoinFlipController the way a frame loop would and prints results:

  python main.py                          # one flip, default preset
  python main.py --mode batch --runs 100  # lifetime stats over 100 flips
  python main.py --mode chaos --spin 45   # 8 coins, velocity spread ±0.7%
  python main.py --frames                 # also dump one JSON frame per tick
"""

import argparse
import json
import logging
import sys

from physics import MAX_DT, ParameterSet, WorldBounds, WORLD_HEIGHT, WORLD_WIDTH
from controller import (
    BatchOf, CoinFlipController, CoinFlipError, Divergence, EnsembleSummary,
    FlipResult, Single,
)
from presets import PRESETS, get_preset

logger = logging.getLogger("coinflip")

PARAM_FLAGS = ("height", "velocity", "spin", "angle", "wind", "restitution", "drag")


def setup_logging(level: str = "WARNING") -> None:
    """Configure root logging to stdout in the structured format."""
    log_level = getattr(logging, level.upper(), logging.WARNING)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coinflip",
        description="Headless coin flip physics simulator",
    )
    parser.add_argument("--mode", choices=("single", "batch", "chaos"), default="single")
    parser.add_argument("--runs", type=int, default=100, help="batch size")
    parser.add_argument("--coins", type=int, default=8, help="chaos ensemble size")
    parser.add_argument("--perturbation", type=float, default=0.002,
                        help="chaos velocity spread per coin index")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="default")
    for name in PARAM_FLAGS:
        parser.add_argument(f"--{name}", type=float, default=None,
                            help=f"override preset {name}")
    parser.add_argument("--width", type=float, default=WORLD_WIDTH, help="world width (m)")
    parser.add_argument("--world-height", type=float, default=WORLD_HEIGHT,
                        help="world height (m)")
    parser.add_argument("--dt", type=float, default=MAX_DT, help="frame time (s)")
    parser.add_argument("--frames", action="store_true",
                        help="print one compact JSON frame per tick")
    parser.add_argument("--log-level", default="WARNING")
    return parser


def params_from_args(args: argparse.Namespace) -> ParameterSet:
    params = get_preset(args.preset).params
    overrides = {name: getattr(args, name) for name in PARAM_FLAGS
                 if getattr(args, name) is not None}
    if overrides:
        params = params.replace(**overrides)
    for name in params.out_of_range():
        logger.warning("%s=%s is outside the usual range", name, getattr(params, name))
    return params


def mode_from_args(args: argparse.Namespace):
    if args.mode == "batch":
        return BatchOf(args.runs)
    if args.mode == "chaos":
        return Divergence(args.coins, args.perturbation)
    return Single()


def _print_event(event) -> None:
    if isinstance(event, FlipResult):
        print(f"[{event.index + 1}] {event.outcome.name}")
    elif isinstance(event, EnsembleSummary):
        outcomes = " ".join(o.name[0] for o in event.outcomes)
        print(f"{event.message}  [{outcomes}]")
        if event.diverged:
            print("Same initial conditions (±0.7%) produced different outcomes!")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    params = params_from_args(args)
    ctrl = CoinFlipController(WorldBounds(args.width, args.world_height))
    ctrl.on_run_finished(_print_event)
    ctrl.on_run_error(lambda failure: print(f"Run {failure.run_id} failed: {failure.error}",
                                            file=sys.stderr))

    try:
        ctrl.start_run(mode_from_args(args), params)
        if args.frames:
            for frame in ctrl.iter_frames(args.dt):
                print(json.dumps(frame.to_dict(), separators=(',', ':')))
                if ctrl.active and ctrl.elapsed > ctrl.DEFAULT_MAX_TIME:
                    ctrl.abort_run()
                    print(f"error: coins still moving after {ctrl.DEFAULT_MAX_TIME:.0f}s",
                          file=sys.stderr)
                    return 2
            if ctrl.handle.error is not None:
                return 2
        else:
            ctrl.run_to_completion(args.dt)
    except CoinFlipError as exc:
        # degenerate runs were already reported by the error callback
        if ctrl.handle is None or ctrl.handle.error is not exc:
            print(f"error: {exc}", file=sys.stderr)
        return 2

    if not isinstance(ctrl.handle.mode, Divergence):
        print(ctrl.get_aggregate_stats())
    return 0


if __name__ == "__main__":
    sys.exit(main())

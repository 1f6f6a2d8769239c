"""
CoinFlipController — Layer 2 (Run Orchestration)

Owns the active coins, the run state machine and the lifetime statistics.
The presentation layer (canvas, sliders, stats bar) talks to it through:

  ctrl.start_run(mode, params)   — build fresh coins, IDLE/FINISHED -> RUNNING
  ctrl.tick(dt)                  — advance every active coin, returns a FrameSnapshot
  ctrl.on_run_finished(cb)       — FlipResult per coin (single/batch) or EnsembleSummary
  ctrl.on_run_error(cb)          — RunFailure when a run degenerates
  ctrl.get_aggregate_stats()     — copy of total / heads / tails
  ctrl.status_msg                — one-line text for the result display

Headless hosts use run_to_completion(); animated hosts pull iter_frames().
"""

import enum
import logging
import math
import numbers
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator

import numpy as np

from physics import (
    MAX_DT, Coin, CoinFlipError, DegenerateParameterError, Outcome, ParameterSet,
    WorldBounds, check_finite, clamp_dt, face_up, launch_coin, step,
)

logger = logging.getLogger(__name__)


# ── Errors ───────────────────────────────────────────────────────────────────

class InvalidRunModeError(CoinFlipError, ValueError):
    """Mode parameters rejected by start_run; no run was started."""


class RunInProgressError(CoinFlipError, RuntimeError):
    """start_run called while another run is still RUNNING."""


class SettleTimeoutError(CoinFlipError, RuntimeError):
    """run_to_completion exceeded its simulated-time budget."""


# ── Run modes ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Single:
    """One coin, counted in the lifetime statistics."""


@dataclass(frozen=True)
class BatchOf:
    """n single runs back to back, each settling before the next starts."""
    n: int = 100


@dataclass(frozen=True)
class Divergence:
    """n coins with launch velocity spread by ``perturbation`` per index step."""
    n: int = 8
    perturbation: float = 0.002


RunMode = Single | BatchOf | Divergence


class RunPhase(enum.Enum):
    IDLE = 0
    RUNNING = 1
    FINISHED = 2


# ── Events / results ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FlipResult:
    run_id: int
    index: int  # position within a batch, 0 for a single run
    outcome: Outcome


@dataclass(frozen=True)
class EnsembleSummary:
    run_id: int
    outcomes: tuple
    heads: int
    tails: int

    @property
    def diverged(self) -> bool:
        return self.heads > 0 and self.tails > 0

    @property
    def message(self) -> str:
        return f"Chaos Demo Results: Heads: {self.heads}, Tails: {self.tails}"


@dataclass(frozen=True)
class RunFailure:
    run_id: int
    error: Exception


@dataclass
class AggregateStats:
    total: int = 0
    heads: int = 0
    tails: int = 0

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.HEADS:
            self.heads += 1
        elif outcome is Outcome.TAILS:
            self.tails += 1
        else:
            raise ValueError(f"cannot record unresolved outcome {outcome!r}")
        self.total += 1

    def clear(self) -> None:
        self.total = self.heads = self.tails = 0

    @property
    def heads_percent(self) -> float:
        return self.heads / self.total * 100 if self.total else 0.0

    @property
    def tails_percent(self) -> float:
        return self.tails / self.total * 100 if self.total else 0.0

    def __str__(self) -> str:
        return (f"Total: {self.total}  "
                f"Heads: {self.heads} ({self.heads_percent:.1f}%)  "
                f"Tails: {self.tails} ({self.tails_percent:.1f}%)")


@dataclass
class RunHandle:
    """Progress and results of one start_run call."""
    run_id: int
    mode: RunMode
    params: ParameterSet
    bounds: WorldBounds
    runs_total: int = 1
    runs_completed: int = 0
    results: list = field(default_factory=list)
    summary: EnsembleSummary | None = None
    error: Exception | None = None
    aborted: bool = False

    @property
    def done(self) -> bool:
        return (self.aborted or self.error is not None
                or self.runs_completed >= self.runs_total)


# ── Snapshots ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CoinSnapshot:
    index: int
    position: tuple
    angle: float
    settled: bool
    outcome: Outcome
    trajectory: tuple
    color_tag: int
    face: Outcome  # side currently up, for drawing H/T mid-flight


@dataclass
class FrameSnapshot:
    run_id: int | None
    phase: RunPhase
    elapsed: float
    coins: list = field(default_factory=list)

    def to_dict(self, include_trajectory: bool = False) -> dict:
        """JSON-ready frame, rounded like the renderer's wire messages."""
        coins = []
        for c in self.coins:
            entry = {
                "index": c.index,
                "pos": [round(c.position[0], 5), round(c.position[1], 5)],
                "angle": round(c.angle, 4),
                "settled": c.settled,
                "outcome": c.outcome.name,
                "face": c.face.name,
                "color": c.color_tag,
            }
            if include_trajectory:
                entry["trajectory"] = [[round(x, 4), round(y, 4)] for x, y in c.trajectory]
            coins.append(entry)
        return {
            "type": "frame",
            "run_id": self.run_id,
            "phase": self.phase.name,
            "t": round(self.elapsed, 4),
            "coins": coins,
        }


# ── Mode validation ──────────────────────────────────────────────────────────

def _check_count(n, label: str) -> int:
    if isinstance(n, bool) or not isinstance(n, numbers.Integral):
        raise InvalidRunModeError(f"{label}: ensemble size must be an integer, got {n!r}")
    if n <= 0:
        raise InvalidRunModeError(f"{label}: ensemble size must be positive, got {n}")
    return int(n)


def divergence_params(params: ParameterSet, n: int, perturbation: float) -> list[ParameterSet]:
    """Per-coin parameter copies with launch velocity spread around the centre.

    Coin i gets velocity * (1 + (i - (n-1)/2) * perturbation); everything
    else is shared.
    """
    n = _check_count(n, "Divergence")
    out = []
    centre = (n - 1) / 2
    for i in range(n):
        velocity = params.velocity * (1 + (i - centre) * perturbation)
        if not math.isfinite(velocity):
            raise InvalidRunModeError(
                f"Divergence: perturbation={perturbation!r} gives non-finite "
                f"velocity for coin {i} (base velocity={params.velocity!r})"
            )
        out.append(params.replace(velocity=velocity))
    return out


class CoinFlipController:
    """Layer 2: run state machine + physics orchestration."""

    DEFAULT_MAX_TIME = 60.0  # simulated seconds per sub-run in run_to_completion
    BATCH_LOG_EVERY  = 10

    # ── Constructor ───────────────────────────────────────────────────────────

    def __init__(self, bounds: WorldBounds | None = None):
        self.bounds = bounds or WorldBounds()

        # Run state (replaced wholesale by start_run)
        self.coins: list[Coin] = []
        self.phase = RunPhase.IDLE
        self.handle: RunHandle | None = None
        self.elapsed = 0.0
        self._run_counter = 0

        # Lifetime statistics (survive runs; cleared only explicitly)
        self.stats = AggregateStats()

        self.status_msg = ""

        self._finished_callbacks: list[Callable] = []
        self._error_callbacks: list[Callable] = []

    @property
    def active(self) -> bool:
        return self.phase is RunPhase.RUNNING

    # ──────────────────────────────────────────────────────────────────────────
    # Callbacks
    # ──────────────────────────────────────────────────────────────────────────

    def on_run_finished(self, callback: Callable) -> None:
        """Register cb(FlipResult | EnsembleSummary)."""
        self._finished_callbacks.append(callback)

    def on_run_error(self, callback: Callable) -> None:
        """Register cb(RunFailure)."""
        self._error_callbacks.append(callback)

    # ──────────────────────────────────────────────────────────────────────────
    # Run start / stop
    # ──────────────────────────────────────────────────────────────────────────

    def start_run(self, mode: RunMode, params: ParameterSet,
                  bounds: WorldBounds | None = None) -> RunHandle:
        """Validate the mode, build fresh coins and enter RUNNING."""
        if self.phase is RunPhase.RUNNING:
            raise RunInProgressError(f"run {self.handle.run_id} is still running")

        bounds = bounds or self.bounds
        if isinstance(mode, Single):
            runs_total = 1
            coins = [launch_coin(params, bounds)]
        elif isinstance(mode, BatchOf):
            runs_total = _check_count(mode.n, "BatchOf")
            coins = [launch_coin(params, bounds)]
        elif isinstance(mode, Divergence):
            runs_total = 1
            coins = [launch_coin(p, bounds, color_tag=i)
                     for i, p in enumerate(divergence_params(params, mode.n, mode.perturbation))]
        else:
            raise InvalidRunModeError(f"unknown run mode {mode!r}")

        self._run_counter += 1
        self.handle = RunHandle(
            run_id=self._run_counter, mode=mode, params=params,
            bounds=bounds, runs_total=runs_total,
        )
        self.coins = coins
        self.elapsed = 0.0
        self.phase = RunPhase.RUNNING
        self.status_msg = "Running..."
        logger.info("run %d started: mode=%s coins=%d params=%s",
                    self.handle.run_id, mode, len(coins), params)
        return self.handle

    def abort_run(self) -> None:
        """Drop all active coins and return to IDLE without reporting anything."""
        if self.phase is not RunPhase.RUNNING:
            return
        self.handle.aborted = True
        logger.info("run %d aborted after %d/%d runs",
                    self.handle.run_id, self.handle.runs_completed, self.handle.runs_total)
        self.coins = []
        self.phase = RunPhase.IDLE
        self.status_msg = ""

    def reset(self) -> None:
        """Abort any run and go IDLE. Statistics are kept."""
        self.abort_run()
        self.coins = []
        self.elapsed = 0.0
        self.phase = RunPhase.IDLE
        self.status_msg = ""

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def tick(self, dt: float) -> FrameSnapshot:
        """Advance every active coin by one clamped step. Called every frame by L3."""
        if self.phase is not RunPhase.RUNNING:
            return self.snapshot()
        # Snapshot the stepped coins before a batch swaps in the next one
        frame = self._advance(dt, capture=True)
        frame.phase = self.phase
        return frame

    def _advance(self, dt: float, capture: bool = False) -> FrameSnapshot | None:
        dt = clamp_dt(dt)
        # overflow / inf-inf surface as non-finite state and are reported below
        with np.errstate(all="ignore"):
            for coin in self.coins:
                if not coin.settled:
                    step(coin, dt, self.handle.bounds)
        self.elapsed += dt

        try:
            for coin in self.coins:
                check_finite(coin)
        except DegenerateParameterError as exc:
            self._fail_run(exc)
            return self.snapshot() if capture else None

        frame = self.snapshot() if capture else None
        if all(c.settled for c in self.coins):
            self._on_coins_settled()
        return frame

    def _on_coins_settled(self) -> None:
        handle = self.handle
        if isinstance(handle.mode, Divergence):
            outcomes = tuple(c.outcome for c in self.coins)
            summary = EnsembleSummary(
                run_id=handle.run_id,
                outcomes=outcomes,
                heads=sum(o is Outcome.HEADS for o in outcomes),
                tails=sum(o is Outcome.TAILS for o in outcomes),
            )
            handle.summary = summary
            handle.results.extend(outcomes)
            handle.runs_completed = 1
            self.status_msg = summary.message
            logger.info("run %d %s", handle.run_id, summary.message)
            self._finish()
            self._emit_finished(summary)
            return

        results = []
        for coin in self.coins:
            result = FlipResult(handle.run_id, handle.runs_completed, coin.outcome)
            self.stats.record(coin.outcome)
            handle.results.append(coin.outcome)
            results.append(result)
        handle.runs_completed += 1
        self.status_msg = f"{results[-1].outcome.name}!"

        level = logging.DEBUG
        if handle.runs_total == 1 or handle.runs_completed % self.BATCH_LOG_EVERY == 0:
            level = logging.INFO
        logger.log(level, "run %d: %d/%d settled %s after %.2fs (%s)",
                   handle.run_id, handle.runs_completed, handle.runs_total,
                   results[-1].outcome.name, self.elapsed, self.stats)

        if handle.runs_completed < handle.runs_total:
            # Next batch element: fresh coin, previous one is discarded
            self.coins = [launch_coin(handle.params, handle.bounds)]
            self.elapsed = 0.0
        else:
            self._finish()
        for result in results:
            self._emit_finished(result)

    def _finish(self) -> None:
        self.phase = RunPhase.FINISHED

    def _fail_run(self, exc: DegenerateParameterError) -> None:
        handle = self.handle
        handle.error = exc
        logger.error("run %d failed: %s", handle.run_id, exc)
        self.coins = []
        self.phase = RunPhase.IDLE
        self.status_msg = f"Run failed: {exc}"
        failure = RunFailure(handle.run_id, exc)
        for cb in self._error_callbacks:
            cb(failure)

    def _emit_finished(self, event) -> None:
        for cb in self._finished_callbacks:
            cb(event)

    # ──────────────────────────────────────────────────────────────────────────
    # Drivers
    # ──────────────────────────────────────────────────────────────────────────

    def run_to_completion(self, dt: float = MAX_DT,
                          max_time: float = DEFAULT_MAX_TIME) -> RunHandle | None:
        """Tick synchronously until the current run leaves RUNNING.

        ``max_time`` bounds the simulated time of each sub-run (a coin in
        strong wind may never settle). Returns the handle; re-raises the
        run's DegenerateParameterError if it failed. With no run in progress
        the last handle is returned unchanged.
        """
        handle = self.handle
        if self.phase is not RunPhase.RUNNING:
            return handle

        while self.phase is RunPhase.RUNNING:
            self._advance(dt)
            if self.phase is RunPhase.RUNNING and self.elapsed > max_time:
                unsettled = sum(not c.settled for c in self.coins)
                self.abort_run()
                raise SettleTimeoutError(
                    f"run {handle.run_id}: {unsettled} coin(s) still moving after "
                    f"{max_time:.1f}s simulated (wind={handle.params.wind})"
                )

        if handle.error is not None:
            raise handle.error
        return handle

    def iter_frames(self, dt: float = MAX_DT) -> Iterator[FrameSnapshot]:
        """Yield one FrameSnapshot per tick until the run leaves RUNNING."""
        while self.phase is RunPhase.RUNNING:
            yield self.tick(dt)

    # ──────────────────────────────────────────────────────────────────────────
    # State queries
    # ──────────────────────────────────────────────────────────────────────────

    def snapshot(self) -> FrameSnapshot:
        coins = [
            CoinSnapshot(
                index=i,
                position=(float(c.position[0]), float(c.position[1])),
                angle=float(c.angle),
                settled=c.settled,
                outcome=c.outcome,
                trajectory=tuple(c.trajectory),
                color_tag=c.color_tag,
                face=face_up(c.angle),
            )
            for i, c in enumerate(self.coins)
        ]
        run_id = self.handle.run_id if self.handle is not None else None
        return FrameSnapshot(run_id=run_id, phase=self.phase,
                             elapsed=self.elapsed, coins=coins)

    def get_aggregate_stats(self) -> AggregateStats:
        return replace(self.stats)

    def clear_aggregate_stats(self) -> None:
        logger.info("statistics cleared (%s)", self.stats)
        self.stats.clear()

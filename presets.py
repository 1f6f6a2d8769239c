"""
Parameter presets
Named launch setups (default toss, high spin, windy, dead/lively bounce,
gentle toss) plus a helper that sets one up on a controller and optionally
runs it to completion.
"""

from dataclasses import dataclass

from physics import ParameterSet
from controller import CoinFlipController, Single


@dataclass(frozen=True)
class Preset:
    name: str
    label: str
    params: ParameterSet


PRESETS = {
    p.name: p for p in (
        Preset("default", "Default toss", ParameterSet()),
        Preset("high_spin", "High spin",
               ParameterSet(spin=45.0, velocity=6.0)),
        Preset("windy", "Head wind",
               ParameterSet(wind=-1.5, drag=0.01)),
        Preset("dead_bounce", "Dead bounce (soft floor)",
               ParameterSet(restitution=0.15)),
        Preset("lively_bounce", "Lively bounce (hard floor)",
               ParameterSet(restitution=0.85, height=2.5)),
        Preset("gentle_toss", "Gentle toss",
               ParameterSet(height=0.8, velocity=2.5, spin=8.0, angle=85.0)),
    )
}


def get_preset(name: str) -> Preset:
    try:
        return PRESETS[name]
    except KeyError:
        known = ", ".join(sorted(PRESETS))
        raise KeyError(f"unknown preset '{name}' (known: {known})") from None


def run_preset(name: str, mode=None, run: bool = True,
               controller: CoinFlipController | None = None) -> dict:
    """Start a preset on ``controller`` (a fresh one by default).

    With ``run=False`` only the coins are built, so a renderer can animate
    the run itself via tick().
    """
    preset = get_preset(name)
    ctrl = controller or CoinFlipController()
    handle = ctrl.start_run(mode or Single(), preset.params)
    if run:
        ctrl.run_to_completion()
    return {"preset": preset, "controller": ctrl, "handle": handle,
            "coins": list(ctrl.coins)}

"""
2D Coin Flip Physics Engine
Semi-implicit Euler integrator, floor/wall bounce, settle + Heads/Tails classification
"""

import enum
import math
import numpy as np
from dataclasses import dataclass, field, fields, asdict, replace as _dc_replace
from typing import List, Tuple

# ──────────────────────────────────────────────
# Constants (SI units, y axis points down)
# ──────────────────────────────────────────────
GRAVITY: float = 9.81  # m/s^2
COIN_RADIUS: float = 0.12  # m
COIN_MASS: float = 0.01  # kg  (not used by any force term)

# World (original canvas: 600 x 500 px at 100 px/m)
WORLD_WIDTH: float = 6.0
WORLD_HEIGHT: float = 5.0
GROUND_MARGIN: float = 0.05  # ground line sits this far above the world bottom

# Contact response
GROUND_FRICTION: float = 0.95  # vx multiplier per ground contact
SPIN_FRICTION: float = 0.9  # angular velocity multiplier per ground contact
WALL_RESTITUTION: float = 0.8
WIND_FACTOR: float = 0.5

# Settle detection
SETTLE_SPEED: float = 0.1  # m/s, per component
SETTLE_TIME: float = 0.5  # s of contiguous low speed

TRAJECTORY_LIMIT: int = 1000

# Time step bounds
MAX_DT: float = 0.02  # 50 steps/s floor
MIN_DT: float = 1e-3  # substituted for dt <= 0

# ── Runtime-editable behavior constants ───────────────────────────────────────
# step() reads the constants above by name every call, so a host may tune
# them live via:  import physics as _phys;  _phys.WALL_RESTITUTION = 0.7


class Outcome(enum.Enum):
    UNRESOLVED = 0
    HEADS = 1
    TAILS = 2


class CoinFlipError(Exception):
    """Base class for coin flip simulation errors."""


class DegenerateParameterError(CoinFlipError, ArithmeticError):
    """A coin's state stopped being finite (NaN or infinity)."""

    def __init__(self, message: str, color_tag: int = 0):
        super().__init__(message)
        self.color_tag = color_tag


# ──────────────────────────────────────────────
# Parameters / world
# ──────────────────────────────────────────────

# name -> (min, max, slider step); advisory only, the core clamps nothing
PARAMETER_RANGES = {
    "height":      (0.5, 3.0, 0.1),
    "velocity":    (2.0, 10.0, 0.1),
    "spin":        (5.0, 50.0, 0.5),
    "angle":       (60.0, 90.0, 1.0),
    "wind":        (-2.0, 2.0, 0.1),
    "restitution": (0.1, 0.9, 0.01),
    "drag":        (0.0, 0.02, 0.001),
}


@dataclass(frozen=True)
class ParameterSet:
    """Launch parameters for one run. Snapshotted into every coin it builds."""
    height: float = 1.5  # m above the world bottom
    velocity: float = 5.0  # m/s
    spin: float = 20.0  # rad/s
    angle: float = 75.0  # degrees above horizontal
    wind: float = 0.0  # m/s
    restitution: float = 0.6
    drag: float = 0.005

    def replace(self, **changes) -> "ParameterSet":
        return _dc_replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ParameterSet":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown parameter(s): {', '.join(unknown)}")
        return cls(**{k: float(v) for k, v in data.items()})

    def out_of_range(self) -> List[str]:
        """Names of fields outside their advisory slider range."""
        out = []
        for name, (lo, hi, _step) in PARAMETER_RANGES.items():
            value = getattr(self, name)
            if not lo <= value <= hi:
                out.append(name)
        return out


@dataclass(frozen=True)
class WorldBounds:
    width: float = WORLD_WIDTH
    height: float = WORLD_HEIGHT

    @property
    def ground_y(self) -> float:
        return self.height - GROUND_MARGIN


# ──────────────────────────────────────────────
# Coin
# ──────────────────────────────────────────────

@dataclass
class Coin:
    """Rigid disk state. Plain record: all physics lives in step()."""
    position: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0]))
    velocity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0]))
    angle: float = 0.0
    angular_velocity: float = 0.0
    restitution: float = 0.6
    drag: float = 0.005
    wind: float = 0.0
    radius: float = COIN_RADIUS
    mass: float = COIN_MASS
    settled: bool = False
    settle_timer: float = 0.0
    outcome: Outcome = Outcome.UNRESOLVED
    trajectory: List[Tuple[float, float]] = field(default_factory=list)
    color_tag: int = 0

    def __post_init__(self):
        self.position = np.array(self.position, dtype=float)
        self.velocity = np.array(self.velocity, dtype=float)

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))


def launch_coin(params: ParameterSet, bounds: WorldBounds = WorldBounds(),
                color_tag: int = 0) -> Coin:
    """Build a coin at the launch point with velocity from angle/velocity.

    Launch point is horizontally centred, ``params.height`` above the world
    bottom. Negative vy is up.
    """
    theta = math.radians(params.angle)
    return Coin(
        position=[bounds.width / 2, bounds.height - params.height],
        velocity=[math.cos(theta) * params.velocity,
                  -math.sin(theta) * params.velocity],
        angle=0.0,
        angular_velocity=params.spin,
        restitution=params.restitution,
        drag=params.drag,
        wind=params.wind,
        color_tag=color_tag,
    )


# ──────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────

def normalize_angle(angle: float) -> float:
    """Map an unbounded rotation angle into [0, 2*pi)."""
    two_pi = 2 * math.pi
    a = math.fmod(angle, two_pi)
    if a < 0:
        a += two_pi
    # fmod of a tiny negative value can round up to exactly 2*pi
    if a >= two_pi:
        a = 0.0
    return a


def face_up(angle: float) -> Outcome:
    """Side currently facing up. Heads for (3pi/2, 2pi) U [0, pi/2)."""
    a = normalize_angle(angle)
    quarter = math.pi / 2
    if a < quarter or a > 3 * quarter:
        return Outcome.HEADS
    return Outcome.TAILS


def classify(coin: Coin) -> Outcome:
    """Final outcome of a settled coin; UNRESOLVED while it still moves."""
    if not coin.settled:
        return Outcome.UNRESOLVED
    return face_up(coin.angle)


# ──────────────────────────────────────────────
# Integrator
# ──────────────────────────────────────────────

def clamp_dt(dt: float) -> float:
    """Clamp a host-supplied frame time into (0, MAX_DT]."""
    if math.isnan(dt) or dt <= 0.0:
        return MIN_DT
    return min(dt, MAX_DT)


def _apply_ground(coin: Coin, dt: float, ground_y: float) -> None:
    """Bounce off the ground and advance the settle timer."""
    if coin.position[1] + coin.radius <= ground_y:
        return

    coin.position[1] = ground_y - coin.radius
    coin.velocity[1] = -coin.velocity[1] * coin.restitution
    coin.velocity[0] *= GROUND_FRICTION
    coin.angular_velocity *= SPIN_FRICTION

    if abs(coin.velocity[1]) < SETTLE_SPEED and abs(coin.velocity[0]) < SETTLE_SPEED:
        coin.settle_timer += dt
        if coin.settle_timer > SETTLE_TIME:
            coin.settled = True
            coin.velocity[:] = 0.0
            coin.angular_velocity = 0.0
            coin.outcome = face_up(coin.angle)
    else:
        coin.settle_timer = 0.0


def _apply_walls(coin: Coin, width: float) -> None:
    """Clamp to the side walls, reflecting vx with a fixed restitution."""
    R = coin.radius
    if coin.position[0] - R < 0:
        coin.position[0] = R
        coin.velocity[0] = -coin.velocity[0] * WALL_RESTITUTION
    if coin.position[0] + R > width:
        coin.position[0] = width - R
        coin.velocity[0] = -coin.velocity[0] * WALL_RESTITUTION


def step(coin: Coin, dt: float, bounds: WorldBounds = WorldBounds()) -> None:
    """Advance one coin by dt seconds in place.

    Order matters: every term sees the velocity already updated by the
    previous one (semi-implicit Euler). Never raises; a settled coin is left
    untouched.
    """
    if coin.settled:
        return

    # Gravity
    coin.velocity[1] += GRAVITY * dt

    # Quadratic drag, opposite to velocity
    speed = math.hypot(coin.velocity[0], coin.velocity[1])
    if speed > 0:
        drag_mag = 0.5 * coin.drag * speed * speed
        coin.velocity[0] += -(drag_mag * coin.velocity[0] / speed) * dt
        coin.velocity[1] += -(drag_mag * coin.velocity[1] / speed) * dt

    # Wind (horizontal acceleration)
    coin.velocity[0] += coin.wind * dt * WIND_FACTOR

    coin.position = coin.position + coin.velocity * dt
    coin.angle += coin.angular_velocity * dt

    if len(coin.trajectory) < TRAJECTORY_LIMIT:
        coin.trajectory.append((float(coin.position[0]), float(coin.position[1])))

    _apply_ground(coin, dt, bounds.ground_y)
    _apply_walls(coin, bounds.width)


# ──────────────────────────────────────────────
# Finite-state checks
# ──────────────────────────────────────────────

def is_finite(coin: Coin) -> bool:
    return bool(np.all(np.isfinite(coin.position))
                and np.all(np.isfinite(coin.velocity))
                and math.isfinite(coin.angle)
                and math.isfinite(coin.angular_velocity))


def check_finite(coin: Coin) -> None:
    """Raise DegenerateParameterError if any kinematic field is NaN/inf."""
    if is_finite(coin):
        return
    raise DegenerateParameterError(
        f"coin {coin.color_tag} left the finite domain: "
        f"pos={coin.position.tolist()} vel={coin.velocity.tolist()} "
        f"angle={coin.angle} w={coin.angular_velocity} "
        f"(drag={coin.drag}, restitution={coin.restitution}, wind={coin.wind})",
        color_tag=coin.color_tag,
    )

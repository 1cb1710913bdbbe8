"""Simulation core for the flappy game: physics, obstacles, scoring and phases."""

import json
import logging
import math
import os
import random
import sys
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

import pygame
from dotenv import load_dotenv


# ---------------- Errors ----------------
class FlappyError(Exception):
    """Base class for engine errors."""


class ConfigError(FlappyError, ValueError):
    """Raised when the game configuration cannot produce a valid world."""


# ---------------- Logging ----------------
class RoundFormatter(logging.Formatter):
    """One line per record; structured ``data`` is appended as key=value pairs.

    With ``as_json`` each record is written as one JSON object (log files).
    """

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def format(self, record):
        data = getattr(record, "data", None) or {}
        if self.as_json:
            entry = {
                "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                "level": record.levelname.lower(),
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if data:
                entry["data"] = data
            return json.dumps(entry, default=str)

        ts = datetime.now().strftime("%H:%M:%S")
        name = record.name.replace("flappy.", "")
        pairs = "".join(f" {k}={v}" for k, v in data.items())
        return f"{ts} [{record.levelname[0]}] {name}: {record.getMessage()}{pairs}"


def setup_logging(level: str = "info", log_file: Optional[str] = None) -> None:
    """Configure the flappy root logger: stderr, plus JSON lines to log_file."""
    root = logging.getLogger("flappy")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(RoundFormatter())
    root.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(RoundFormatter(as_json=True))
        root.addHandler(fh)


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the flappy namespace."""
    return logging.getLogger(f"flappy.{name}")


log = get_logger("engine")


# ---------------- Configuration ----------------
@dataclass(frozen=True)
class GameConfig:
    """Tunable constants of a round. Distances are pixels, times are ticks unless noted."""

    bird_size: int = 30
    pipe_width: int = 60
    gap_height: int = 200
    gravity: float = 0.6
    jump_force: float = -12.0     # negative is upward, y grows downward
    pipe_speed: float = 3.0
    tick_period_ms: float = 16.0  # ~60 ticks per second
    dt: float = 1.0
    play_area_width: int = 400
    play_area_height: int = 600
    bird_x: int = 100
    min_edge_margin: int = 100
    spawn_distance: int = 200
    seed: Optional[int] = None

    def __post_init__(self):
        """Reject settings that would only fail later, mid-game."""
        for name in ("bird_size", "pipe_width", "gap_height", "play_area_width",
                     "play_area_height", "tick_period_ms", "dt", "pipe_speed",
                     "spawn_distance"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)!r}")
        for name in ("min_edge_margin", "bird_x"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative, got {getattr(self, name)!r}")
        if self.bird_x + self.bird_size > self.play_area_width:
            raise ConfigError(
                f"bird_x ({self.bird_x}) + bird_size ({self.bird_size}) "
                f"exceeds play_area_width ({self.play_area_width})"
            )
        check_obstacle_geometry(self.play_area_height, self.gap_height, self.min_edge_margin)

    @property
    def tick_rate(self) -> float:
        """Ticks per second implied by the tick period."""
        return 1000.0 / self.tick_period_ms

    def resized(self, width, height) -> "GameConfig":
        """Return a copy for a new play area, validated like a fresh config."""
        return replace(self, play_area_width=width, play_area_height=height)


def _cast(raw: str, default):
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    # Optional fields (seed) default to None
    return int(raw) if raw.strip() else None


def load_config(env_file: Optional[str] = None) -> GameConfig:
    """Load configuration from .env and FLAPPY_* environment variables."""
    load_dotenv(env_file)

    overrides = {}
    for f in fields(GameConfig):
        key = f"FLAPPY_{f.name.upper()}"
        raw = os.environ.get(key)
        if raw is None:
            continue
        try:
            overrides[f.name] = _cast(raw, f.default)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {raw!r}") from e

    config = GameConfig(**overrides)
    if overrides:
        log.debug("Loaded config overrides", extra={"data": overrides})
    return config


# ---------------- World state ----------------
class GamePhase(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    ENDED = "ended"


@dataclass(frozen=True)
class Bird:
    x: float
    y: float
    velocity: float = 0.0


@dataclass(frozen=True)
class Obstacle:
    """A pipe pair: a top barrier, a gap, and a bottom barrier."""

    x: float
    top_height: float
    bottom_height: float
    passed: bool = False


@dataclass(frozen=True)
class World:
    """Immutable snapshot of everything a renderer needs."""

    bird: Bird
    obstacles: Tuple[Obstacle, ...] = ()
    score: int = 0
    phase: GamePhase = GamePhase.IDLE


@dataclass(frozen=True)
class Detection:
    collided: bool
    newly_passed: Tuple[Obstacle, ...] = ()


# ---------------- Obstacle generator ----------------
def top_height_bounds(play_area_height, gap_height, min_edge_margin):
    """Whole-number range of top heights that keep both barriers >= the margin."""
    return (math.ceil(min_edge_margin),
            math.floor(play_area_height - gap_height - min_edge_margin))


def check_obstacle_geometry(play_area_height, gap_height, min_edge_margin):
    """Raise ConfigError when no gap placement keeps both margins."""
    if gap_height + 2 * min_edge_margin > play_area_height:
        raise ConfigError(
            f"gap_height ({gap_height}) + 2 * min_edge_margin ({min_edge_margin}) "
            f"exceeds play_area_height ({play_area_height})"
        )
    low, high = top_height_bounds(play_area_height, gap_height, min_edge_margin)
    if low > high:
        raise ConfigError(
            f"no whole-number top height fits between margins of {min_edge_margin} "
            f"(gap_height {gap_height}, play_area_height {play_area_height})"
        )


def generate_obstacle(play_area_height, gap_height, min_edge_margin, spawn_x,
                      rng: Optional[random.Random] = None) -> Obstacle:
    """Create a fresh obstacle at spawn_x with a random gap position."""
    check_obstacle_geometry(play_area_height, gap_height, min_edge_margin)
    rng = rng or random

    # Integer placement keeps top + gap + bottom exactly equal to the height
    low, high = top_height_bounds(play_area_height, gap_height, min_edge_margin)
    top_height = rng.randint(low, high)
    bottom_height = play_area_height - top_height - gap_height

    return Obstacle(x=spawn_x, top_height=top_height, bottom_height=bottom_height)


# ---------------- Physics integrator ----------------
def step_bird(bird: Bird, gravity, dt) -> Bird:
    """Advance the bird one tick with semi-implicit Euler."""
    velocity = bird.velocity + gravity * dt
    return replace(bird, y=bird.y + velocity * dt, velocity=velocity)


def apply_jump(bird: Bird, jump_force) -> Bird:
    """Replace the vertical velocity with the jump impulse."""
    return replace(bird, velocity=jump_force)


def step_obstacles(obstacles: Sequence[Obstacle], speed, dt) -> Tuple[Obstacle, ...]:
    """Scroll every obstacle left by speed * dt, keeping spawn order."""
    return tuple(replace(o, x=o.x - speed * dt) for o in obstacles)


# ---------------- Collision & scoring ----------------
def hits_bounds(bird: Bird, play_area_height, bird_size) -> bool:
    return bird.y <= 0 or bird.y + bird_size >= play_area_height


def hits_obstacle(bird: Bird, obstacle: Obstacle, bird_size, pipe_width, gap_height) -> bool:
    """True when the bird overlaps the pipe column outside of its gap."""
    overlaps = bird.x < obstacle.x + pipe_width and obstacle.x < bird.x + bird_size
    if not overlaps:
        return False
    gap_top = obstacle.top_height
    gap_bottom = obstacle.top_height + gap_height
    return bird.y < gap_top or bird.y + bird_size > gap_bottom


def detect(bird: Bird, obstacles: Sequence[Obstacle], play_area_height, bird_size,
           pipe_width, gap_height) -> Detection:
    """Evaluate a post-tick world for collisions and newly passed obstacles.

    Inputs are left untouched. Obstacles in ``newly_passed`` are the same
    objects that were passed in, so callers can match them by identity.
    """
    collided = hits_bounds(bird, play_area_height, bird_size) or any(
        hits_obstacle(bird, o, bird_size, pipe_width, gap_height) for o in obstacles
    )
    # Strictly behind: a right edge level with bird.x has not been passed yet
    newly_passed = tuple(
        o for o in obstacles if not o.passed and o.x + pipe_width < bird.x
    )
    return Detection(collided=collided, newly_passed=newly_passed)


# ---------------- Events ----------------
class EventType(str, Enum):
    WORLD_CHANGED = "world_changed"
    PHASE_CHANGED = "phase_changed"
    SCORED = "scored"
    COLLIDED = "collided"


@dataclass
class EngineEvent:
    type: EventType
    world: World
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "phase": self.world.phase.value,
            "score": self.world.score,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventBus:
    """Synchronous event bus; subscribers run in emit order on the caller's loop."""

    def __init__(self) -> None:
        self._subscribers: list = []

    def emit(self, event: EngineEvent) -> None:
        for fn in list(self._subscribers):
            fn(event)

    def subscribe(self, fn: Callable[[EngineEvent], None]) -> Callable[[EngineEvent], None]:
        self._subscribers.append(fn)
        return fn

    def unsubscribe(self, fn) -> None:
        try:
            self._subscribers.remove(fn)
        except ValueError:
            pass


# ---------------- Clock / stepper ----------------
class TickClock:
    """Drives a callback at a fixed tick rate. Once stopped, it never fires again."""

    def __init__(self):
        self._callback = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def start(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    def _fire(self) -> bool:
        """Fire one tick if still running. Returns whether it fired."""
        callback = self._callback
        if callback is None:
            return False
        callback()
        return True


class ManualClock(TickClock):
    """Headless clock stepped explicitly; used by tests and simulations."""

    def advance(self, ticks: int = 1) -> int:
        """Fire up to ``ticks`` ticks, stopping early if the clock is stopped."""
        fired = 0
        for _ in range(ticks):
            if not self._fire():
                break
            fired += 1
        return fired


class PygameClock(TickClock):
    """Fixed-step accumulator on top of pygame's frame clock."""

    def __init__(self, tick_period_ms: float = 16.0, fps: int = 60,
                 max_catch_up: int = 5, clock=None):
        """Initialize with the tick period and the frame cap handed to pygame."""
        super().__init__()
        self.tick_period_ms = tick_period_ms
        self.fps = fps
        self.max_catch_up = max_catch_up
        self.clock = clock or pygame.time.Clock()
        self.accumulator = 0.0

    def start(self, callback):
        """Start ticking from a clean accumulator."""
        self.accumulator = 0.0
        self.clock.tick()  # discard time spent before the round began
        super().start(callback)

    def stop(self):
        super().stop()
        self.accumulator = 0.0

    def pump(self) -> int:
        """Wait for the next frame and fire the ticks owed for the elapsed time."""
        elapsed = self.clock.tick(self.fps)
        if not self.running:
            return 0

        self.accumulator += elapsed
        steps = int(self.accumulator // self.tick_period_ms)
        if steps > self.max_catch_up:
            log.warning("Dropping clock backlog", extra={"data": {"owed": steps, "fired": self.max_catch_up}})
            steps = self.max_catch_up
            self.accumulator = 0.0
        else:
            self.accumulator -= steps * self.tick_period_ms

        fired = 0
        for _ in range(steps):
            if not self._fire():
                break
            fired += 1
        return fired


# ---------------- Game state machine ----------------
class FlappyEngine:
    """Owns the world and sequences integrator, generator and detector per tick."""

    def __init__(self, config: Optional[GameConfig] = None, clock: Optional[TickClock] = None,
                 rng: Optional[random.Random] = None, bus: Optional[EventBus] = None,
                 on_world_changed: Optional[Callable[[World], None]] = None):
        """Initialize an idle engine; nothing ticks until start()."""
        self.config = config or GameConfig()
        self.clock = clock or ManualClock()
        self.rng = rng or random.Random(self.config.seed)
        self.bus = bus or EventBus()
        if on_world_changed is not None:
            def forward(event):
                if event.type is EventType.WORLD_CHANGED:
                    on_world_changed(event.world)
            self.bus.subscribe(forward)
        self.world = World(bird=self._fresh_bird())

    @property
    def phase(self) -> GamePhase:
        return self.world.phase

    def _fresh_bird(self) -> Bird:
        return Bird(x=self.config.bird_x, y=self.config.play_area_height / 2, velocity=0.0)

    def _new_obstacle(self) -> Obstacle:
        cfg = self.config
        return generate_obstacle(cfg.play_area_height, cfg.gap_height, cfg.min_edge_margin,
                                 cfg.play_area_width, self.rng)

    def _emit(self, event_type, **data):
        self.bus.emit(EngineEvent(type=event_type, world=self.world, data=data))

    def _emit_phase_change(self, previous: GamePhase):
        self._emit(EventType.PHASE_CHANGED, **{"from": previous.value, "to": self.world.phase.value})

    # ---- commands ----
    def start(self, play_area_size=None):
        """Begin a new round from IDLE or ENDED. Ignored while PLAYING."""
        if self.world.phase is GamePhase.PLAYING:
            log.debug("Ignoring start() while playing")
            return

        if play_area_size is not None:
            width, height = play_area_size
            self.config = self.config.resized(width, height)

        previous = self.world.phase
        self.world = World(
            bird=self._fresh_bird(),
            obstacles=(self._new_obstacle(),),
            score=0,
            phase=GamePhase.PLAYING,
        )
        self.clock.start(self.tick)
        log.info("Round started", extra={"data": {
            "width": self.config.play_area_width, "height": self.config.play_area_height}})

        # Subscribers only ever see the committed round
        self._emit_phase_change(previous)
        self._emit(EventType.WORLD_CHANGED)

    def jump(self):
        """Replace the bird's velocity with the jump impulse. Only while PLAYING."""
        if self.world.phase is not GamePhase.PLAYING:
            log.debug("Ignoring jump() in phase %s", self.world.phase.value)
            return
        self.world = replace(self.world, bird=apply_jump(self.world.bird, self.config.jump_force))

    def tick(self):
        """Advance the simulation by one fixed step. Frozen outside PLAYING."""
        if self.world.phase is not GamePhase.PLAYING:
            return
        cfg = self.config
        world = self.world

        bird = step_bird(world.bird, cfg.gravity, cfg.dt)
        obstacles = step_obstacles(world.obstacles, cfg.pipe_speed, cfg.dt)

        # Prune obstacles fully past the left edge
        kept = tuple(o for o in obstacles if o.x > -cfg.pipe_width)
        if len(kept) != len(obstacles):
            log.debug("Pruned %d obstacle(s)", len(obstacles) - len(kept))
        obstacles = kept

        # Spawn is edge-triggered on the rearmost obstacle
        if not obstacles or obstacles[-1].x < cfg.play_area_width - cfg.spawn_distance:
            obstacles = obstacles + (self._new_obstacle(),)
            log.debug("Spawned obstacle", extra={"data": {"top_height": obstacles[-1].top_height}})

        detection = detect(bird, obstacles, cfg.play_area_height, cfg.bird_size,
                           cfg.pipe_width, cfg.gap_height)

        passed_ids = {id(o) for o in detection.newly_passed}
        if passed_ids:
            obstacles = tuple(replace(o, passed=True) if id(o) in passed_ids else o
                              for o in obstacles)

        gained = len(detection.newly_passed)
        phase = GamePhase.ENDED if detection.collided else GamePhase.PLAYING
        self.world = replace(world, bird=bird, obstacles=obstacles,
                             score=world.score + gained, phase=phase)
        if detection.collided:
            self.clock.stop()
            log.info("Round ended", extra={"data": {"score": self.world.score}})

        # Events go out only once the tick is fully applied
        for n in range(1, gained + 1):
            self._emit(EventType.SCORED, score=world.score + n)
        if detection.collided:
            self._emit_phase_change(world.phase)
            self._emit(EventType.COLLIDED, score=self.world.score)
        self._emit(EventType.WORLD_CHANGED)

    def close(self):
        """Tear down: stop the clock so no further tick can fire."""
        self.clock.stop()

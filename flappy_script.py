import argparse
import sys

import pygame

from flappy_engine import (
    EventType,
    FlappyEngine,
    GamePhase,
    PygameClock,
    get_logger,
    load_config,
    setup_logging,
)

log = get_logger("ui")

# Colors (R, G, B)
SKY = (112, 197, 206)
CLOUD = (255, 255, 255)
PIPE = (34, 139, 34)
PIPE_EDGE = (0, 100, 0)
BIRD_BODY = (255, 215, 0)
BIRD_EDGE = (255, 165, 0)
TEXT = (51, 51, 51)
WHITE = (255, 255, 255)
GAME_OVER_RED = (211, 47, 47)
GROUND = (222, 184, 135)
GROUND_EDGE = (210, 105, 30)

GROUND_HEIGHT = 50  # drawn over the bottom of the play area, collisions use the full height


def ground_rect(width, height):
    """Rectangle of the ground band along the bottom of the play area."""
    return pygame.Rect(0, height - GROUND_HEIGHT, width, GROUND_HEIGHT)


class InputMapper:
    """Maps pygame input events to engine commands."""

    JUMP_KEYS = (pygame.K_SPACE, pygame.K_UP)

    def __init__(self, engine):
        """Initialize the mapper for one engine."""
        self.engine = engine

    def handle_event(self, event):
        """Handle one input event. Returns False when the game should quit."""
        if event.type == pygame.QUIT:
            return False

        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                return False
            if event.key in self.JUMP_KEYS:
                self.press()

        elif event.type in (pygame.MOUSEBUTTONDOWN, pygame.FINGERDOWN):
            self.press()

        return True

    def press(self):
        """A tap starts a round from the overlays and flaps while playing."""
        if self.engine.phase == GamePhase.PLAYING:
            self.engine.jump()
        else:
            self.engine.start()


class FlashEffect:
    """Manages the white flash shown when a round ends."""

    def __init__(self, screen_width, screen_height):
        """Initialize flash effect."""
        self.surface = pygame.Surface((screen_width, screen_height), pygame.SRCALPHA)
        self.alpha = 0
        self.duration = 100  # Flash duration in milliseconds
        self.start_time = 0

    def start_flash(self, current_time):
        """Start the flash effect."""
        self.alpha = 180  # Semi-transparent white
        self.start_time = current_time

    def update(self, current_time):
        """Clear the flash once its duration has elapsed."""
        if self.alpha > 0 and current_time - self.start_time >= self.duration:
            self.alpha = 0

    def draw(self, surface):
        """Draw the flash effect if active."""
        if self.alpha > 0:
            self.surface.fill((255, 255, 255, self.alpha))
            surface.blit(self.surface, (0, 0))


class ScorePulse:
    """Briefly enlarges the score digits after a point."""

    def __init__(self, duration=150, peak=1.3):
        self.duration = duration  # milliseconds
        self.peak = peak
        self.start_time = None

    def start(self, current_time):
        self.start_time = current_time

    def scale(self, current_time):
        """Zoom factor for the score at current_time, easing back to 1."""
        if self.start_time is None:
            return 1.0
        elapsed = current_time - self.start_time
        if elapsed >= self.duration:
            self.start_time = None
            return 1.0
        return self.peak - (self.peak - 1.0) * elapsed / self.duration


class Renderer:
    """Draws world snapshots with pygame primitives."""

    def __init__(self, config):
        """Initialize fonts and cached geometry."""
        self.config = config
        self.font = pygame.font.SysFont(None, 32, bold=True)
        self.big_font = pygame.font.SysFont(None, 56, bold=True)
        self.score_font = pygame.font.SysFont(None, 64, bold=True)

    def draw(self, surface, world, score_scale=1.0):
        """Draw one full frame for the given world."""
        surface.fill(SKY)
        self.draw_clouds(surface)
        for obstacle in world.obstacles:
            self.draw_obstacle(surface, obstacle)
        self.draw_ground(surface)
        self.draw_bird(surface, world.bird)
        self.draw_score(surface, world.score, score_scale)

        if world.phase == GamePhase.IDLE:
            self.draw_overlay(surface, "Flappy Bird", "Tap to make the bird fly", TEXT)
        elif world.phase == GamePhase.ENDED:
            self.draw_overlay(surface, "Game Over!", f"Score: {world.score} - tap to play again",
                              GAME_OVER_RED)

    def draw_clouds(self, surface):
        width = surface.get_width()
        pygame.draw.ellipse(surface, CLOUD, (50, 100, 80, 30))
        pygame.draw.ellipse(surface, CLOUD, (width - 160, 200, 60, 25))

    def draw_obstacle(self, surface, obstacle):
        """Draw the top and bottom barrier of one obstacle."""
        cfg = self.config
        height = surface.get_height()
        top = pygame.Rect(int(obstacle.x), 0, cfg.pipe_width, int(obstacle.top_height))
        bottom_h = int(obstacle.bottom_height)
        bottom = pygame.Rect(int(obstacle.x), height - bottom_h, cfg.pipe_width, bottom_h)
        for rect in (top, bottom):
            pygame.draw.rect(surface, PIPE, rect)
            pygame.draw.rect(surface, PIPE_EDGE, rect, 2)

    def draw_bird(self, surface, bird):
        """Draw the bird as a circle with an eye, inside its square hitbox."""
        size = self.config.bird_size
        center = (int(bird.x + size / 2), int(bird.y + size / 2))
        pygame.draw.circle(surface, BIRD_BODY, center, size // 2)
        pygame.draw.circle(surface, BIRD_EDGE, center, size // 2, 2)
        pygame.draw.circle(surface, (0, 0, 0), (int(bird.x + size - 11), int(bird.y + 11)), 3)

    def draw_ground(self, surface):
        rect = ground_rect(surface.get_width(), surface.get_height())
        pygame.draw.rect(surface, GROUND, rect)
        pygame.draw.line(surface, GROUND_EDGE, rect.topleft, rect.topright, 3)

    def draw_score(self, surface, score, scale=1.0):
        """Draw the current score centred near the top."""
        text = self.score_font.render(str(score), True, WHITE)
        shadow = self.score_font.render(str(score), True, (0, 0, 0))
        if scale != 1.0:
            text = pygame.transform.rotozoom(text, 0, scale)
            shadow = pygame.transform.rotozoom(shadow, 0, scale)
        x = (surface.get_width() - text.get_width()) // 2
        surface.blit(shadow, (x + 2, 22))
        surface.blit(text, (x, 20))

    def draw_overlay(self, surface, title, subtitle, title_color):
        """Dim the play area and show a centred message box."""
        shade = pygame.Surface(surface.get_size(), pygame.SRCALPHA)
        shade.fill((0, 0, 0, 180))
        surface.blit(shade, (0, 0))

        title_img = self.big_font.render(title, True, title_color)
        subtitle_img = self.font.render(subtitle, True, TEXT)
        box_w = max(title_img.get_width(), subtitle_img.get_width()) + 60
        box_h = title_img.get_height() + subtitle_img.get_height() + 60
        box = pygame.Rect(0, 0, box_w, box_h)
        box.center = surface.get_rect().center
        pygame.draw.rect(surface, WHITE, box, border_radius=20)

        surface.blit(title_img, (box.centerx - title_img.get_width() // 2, box.y + 20))
        surface.blit(subtitle_img, (box.centerx - subtitle_img.get_width() // 2,
                                    box.y + 30 + title_img.get_height()))


class FlappyGame:
    """Main game class that wires the engine to a pygame window."""

    def __init__(self, config):
        """Initialize pygame, the window and the engine."""
        pygame.init()
        pygame.key.set_repeat(0)  # Disable key repeat

        self.config = config
        self.screen = pygame.display.set_mode((config.play_area_width, config.play_area_height))
        pygame.display.set_caption("Flappy Bird")

        self.clock = PygameClock(config.tick_period_ms, fps=round(config.tick_rate))
        self.engine = FlappyEngine(config, clock=self.clock)
        self.input = InputMapper(self.engine)
        self.renderer = Renderer(config)
        self.flash = FlashEffect(config.play_area_width, config.play_area_height)
        self.pulse = ScorePulse()

        self.world = self.engine.world
        self.engine.bus.subscribe(self.on_event)

    def on_event(self, event):
        """Keep the latest snapshot and map engine events to feedback."""
        if event.type == EventType.WORLD_CHANGED:
            self.world = event.world
        elif event.type == EventType.COLLIDED:
            self.flash.start_flash(pygame.time.get_ticks())
        elif event.type == EventType.SCORED:
            self.pulse.start(pygame.time.get_ticks())
            log.debug("Point scored", extra={"data": {"score": event.data["score"]}})

    def handle_events(self):
        """Process all pending input events."""
        for event in pygame.event.get():
            if not self.input.handle_event(event):
                return False
        return True

    def draw(self):
        """Draw the latest snapshot."""
        now = pygame.time.get_ticks()
        self.flash.update(now)
        self.renderer.draw(self.screen, self.world, self.pulse.scale(now))
        self.flash.draw(self.screen)
        pygame.display.flip()

    def run(self):
        """Main game loop."""
        running = True
        try:
            while running:
                running = self.handle_events()
                self.clock.pump()
                self.draw()
        finally:
            self.engine.close()
            pygame.quit()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Play the flappy bird simulation.")
    parser.add_argument("--log-level", default="info", help="debug, info, warning or error")
    parser.add_argument("--log-file", default=None, help="Optional NDJSON log file")
    parser.add_argument("--env-file", default=None, help="Path to a .env with FLAPPY_* settings")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)
    config = load_config(args.env_file)
    FlappyGame(config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())

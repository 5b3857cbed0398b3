import os


def _env_int(name, default):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8080)
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")
STATIC_FOLDER = os.environ.get("STATIC_FOLDER", "public")
DEFAULT_ROOM = "game"

MAX_LAP = _env_int("MAX_LAP", 2)
COURSE_LENGTH_Z = 1000.0
TRACK_WIDTH_X = 250.0

CHARGE_MAX = 10
CHARGE_INCREMENT = 2
ACCEL_Z_THRESHOLD = 20.0
CHARGE_SPEED_FACTOR = 0.2
BOOST_FACTOR = 0.7

LATERAL_GAIN = 0.1
BASE_SPEED = 3.0

OBSTACLE_BASE_RADIUS = 25.0
BOX_REACTIVATE_DELAY = 3.0
BONUS_POINTS = 20
BONUS_DURATION = 5.0

PLAYER_COLLISION_RADIUS = 40.0
PLAYER_CLASH_CHARGE = 2
CLASH_SPEED_PENALTY = 0.8
MIN_CLASH_SPEED = 1.0

RANK_POINT_UNIT = 100
TIMER_TICK = 0.1

COURSE_OBSTACLES = [
    {"type": "box", "x": 100.0, "z": -100.0, "points": 5, "size": 30.0},
    {"type": "box", "x": -150.0, "z": -350.0, "points": 5, "size": 30.0},
    {"type": "box", "x": 50.0, "z": -600.0, "points": 5, "size": 30.0},
    {"type": "box", "x": -200.0, "z": -850.0, "points": 5, "size": 30.0},
    {"type": "bonus", "x": 0.0, "z": -500.0, "effect": "speed_x2", "size": 20.0},
]

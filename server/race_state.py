import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field

import settings

logger = logging.getLogger(__name__)

STATUS_LOBBY = "lobby"
STATUS_PLAYING = "playing"
STATUS_FINISHED = "finished"

MODE_SOLO = "solo"
MODE_MULTI = "multi"
VALID_MODES = (MODE_SOLO, MODE_MULTI)

OBSTACLE_BOX = "box"
OBSTACLE_BONUS = "bonus"
EFFECT_SPEED_X2 = "speed_x2"

TASK_OBSTACLE_REACTIVATE = "obstacle_reactivate"
TASK_BOOST_EXPIRE = "boost_expire"


def _default_effects():
    return {"speed_x2_active": False}


@dataclass
class PlayerState:
    id: str
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    speed: float = 0.0
    base_speed: float = settings.BASE_SPEED
    charge_force: int = 0
    points: int = 0
    lap: int = 0
    status: str = STATUS_LOBBY
    mode: str = None
    room: str = None
    effects: dict = field(default_factory=_default_effects)
    finish_time: float = None
    final_rank: int = None
    total_points: int = 0

    @property
    def boost_active(self):
        return bool(self.effects.get("speed_x2_active"))


@dataclass
class ObstacleState:
    index: int
    type: str
    x: float
    z: float
    size: float
    y: float = 0.0
    points: int = 0
    effect: str = None
    collided: bool = False
    reactivate_at: float = None


@dataclass(order=True)
class ScheduledTask:
    fire_at: float
    seq: int
    kind: str = field(compare=False)
    target: object = field(compare=False)


def build_obstacles(config=None):
    obstacles = []
    for index, entry in enumerate(config or settings.COURSE_OBSTACLES):
        obstacles.append(
            ObstacleState(
                index=index,
                type=entry["type"],
                x=float(entry["x"]),
                y=float(entry.get("y", 0.0)),
                z=float(entry["z"]),
                size=float(entry["size"]),
                points=int(entry.get("points", 0)),
                effect=entry.get("effect"),
            )
        )
    return obstacles


class RaceState:
    """Player store, obstacle registry and deferred task list for one server.

    Every mutation is expected to happen while ``lock`` is held; the socket
    handlers and the timer loop each take it for the whole of one event.
    """

    def __init__(self, obstacles=None, max_lap=None):
        self.players = {}
        self.obstacles = build_obstacles(obstacles)
        self.max_lap = max_lap or settings.MAX_LAP
        self.sessions = {}
        self.tasks = []
        self.lock = threading.Lock()
        self._next_player_id = 1
        self._task_seq = itertools.count()

    # -- player store -------------------------------------------------

    def _allocate_id(self):
        while True:
            candidate = f"P{self._next_player_id}"
            self._next_player_id += 1
            if candidate not in self.players:
                return candidate

    def connect(self, sid, requested_id=None):
        player_id = (requested_id or "").strip() or None
        if player_id and player_id in self.sessions.values():
            logger.warning("Client id %s already connected, assigning a new one", player_id)
            player_id = None
        if not player_id:
            player_id = self._allocate_id()
        self.sessions[sid] = player_id
        if player_id not in self.players:
            self.players[player_id] = PlayerState(id=player_id)
        return self.players[player_id]

    def player_for_sid(self, sid):
        player_id = self.sessions.get(sid)
        if player_id is None:
            return None
        return self.players.get(player_id)

    def get_player(self, player_id):
        return self.players.get(player_id)

    def join(self, player_id, room, mode):
        player = self.players.get(player_id)
        if not player:
            return None
        if mode not in VALID_MODES:
            logger.warning("Unknown mode %r for %s, using solo", mode, player_id)
            mode = MODE_SOLO
        player.status = STATUS_PLAYING
        player.mode = mode
        player.room = room or settings.DEFAULT_ROOM
        player.x = 0.0
        player.z = 0.0
        player.speed = 0.0
        player.lap = 0
        player.points = 0
        player.charge_force = 0
        player.finish_time = None
        player.final_rank = None
        player.total_points = 0
        return player

    def disconnect(self, sid):
        player_id = self.sessions.pop(sid, None)
        if player_id is None:
            return None
        self.players.pop(player_id, None)
        return player_id

    # -- obstacle registry --------------------------------------------

    def get_obstacle(self, index):
        if 0 <= index < len(self.obstacles):
            return self.obstacles[index]
        return None

    # -- deferred tasks -----------------------------------------------

    def schedule(self, fire_at, kind, target):
        task = ScheduledTask(fire_at=fire_at, seq=next(self._task_seq), kind=kind, target=target)
        heapq.heappush(self.tasks, task)
        return task

    def pop_due_tasks(self, now):
        due = []
        while self.tasks and self.tasks[0].fire_at <= now:
            due.append(heapq.heappop(self.tasks))
        return due

    # -- snapshots ----------------------------------------------------

    def serialize_player(self, player):
        return {
            "id": player.id,
            "x": player.x,
            "y": player.y,
            "z": player.z,
            "speed": player.speed,
            "baseSpeed": player.base_speed,
            "gekitotsuForce": player.charge_force,
            "points": player.points,
            "lap": player.lap,
            "status": player.status,
            "mode": player.mode,
            "effects": dict(player.effects),
            "finishTime": int(player.finish_time * 1000) if player.finish_time is not None else None,
            "finalRank": player.final_rank,
            "totalPoints": player.total_points,
        }

    def serialize_obstacle(self, obstacle):
        payload = {
            "type": obstacle.type,
            "x": obstacle.x,
            "y": obstacle.y,
            "z": obstacle.z,
            "size": obstacle.size,
            "collided": obstacle.collided,
        }
        if obstacle.type == OBSTACLE_BOX:
            payload["points"] = obstacle.points
        if obstacle.effect:
            payload["effect"] = obstacle.effect
        return payload

    def snapshot(self, ranking=None):
        return {
            "players": {pid: self.serialize_player(p) for pid, p in self.players.items()},
            "obstacles": [self.serialize_obstacle(o) for o in self.obstacles],
            "maxLap": self.max_lap,
            "ranking": list(ranking or []),
        }

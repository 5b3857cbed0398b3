import logging
import math
import time

import settings
from race_state import (
    MODE_MULTI,
    OBSTACLE_BONUS,
    OBSTACLE_BOX,
    EFFECT_SPEED_X2,
    STATUS_FINISHED,
    STATUS_LOBBY,
    STATUS_PLAYING,
    TASK_BOOST_EXPIRE,
    TASK_OBSTACLE_REACTIVATE,
)

logger = logging.getLogger(__name__)


def _clamp(value, low, high):
    return max(low, min(high, value))


def _read_float(data, key):
    raw = data.get(key, 0.0)
    if isinstance(raw, bool):
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return value


def _planar_distance(ax, az, bx, bz):
    return math.hypot(ax - bx, az - bz)


def _add_charge(player, amount):
    player.charge_force = _clamp(player.charge_force + amount, 0, settings.CHARGE_MAX)


def obstacle_threshold(obstacle):
    return settings.OBSTACLE_BASE_RADIUS + obstacle.size / 2


def apply_input(player, data):
    """Integrate one telemetry sample into the player's charge, x and z."""
    if player is None or player.status != STATUS_PLAYING:
        return False
    data = data if isinstance(data, dict) else {}
    roll = _read_float(data, "b")
    accel_z = abs(_read_float(data, "accelerationZ"))

    if accel_z > settings.ACCEL_Z_THRESHOLD:
        _add_charge(player, settings.CHARGE_INCREMENT)

    player.x = _clamp(player.x + roll * settings.LATERAL_GAIN, -settings.TRACK_WIDTH_X, settings.TRACK_WIDTH_X)

    player.base_speed = settings.BASE_SPEED
    if player.boost_active:
        player.speed = player.base_speed * 2
    else:
        player.speed = player.base_speed + player.charge_force * settings.CHARGE_SPEED_FACTOR

    player.z -= player.speed
    return True


def resolve_obstacles(state, player, now):
    events = []
    for obstacle in state.obstacles:
        if obstacle.collided:
            continue
        if _planar_distance(player.x, player.z, obstacle.x, obstacle.z) >= obstacle_threshold(obstacle):
            continue
        # First player processed claims the obstacle for everyone.
        obstacle.collided = True
        player.speed += player.charge_force * settings.BOOST_FACTOR
        player.charge_force = 0

        if obstacle.type == OBSTACLE_BOX:
            player.points += obstacle.points
            obstacle.reactivate_at = now + settings.BOX_REACTIVATE_DELAY
            state.schedule(obstacle.reactivate_at, TASK_OBSTACLE_REACTIVATE, obstacle.index)
        elif obstacle.type == OBSTACLE_BONUS:
            player.points += settings.BONUS_POINTS
            if obstacle.effect == EFFECT_SPEED_X2:
                player.effects["speed_x2_active"] = True
                state.schedule(now + settings.BONUS_DURATION, TASK_BOOST_EXPIRE, player.id)

        logger.info("%s collided with %s at %d", player.id, obstacle.type, obstacle.index)
        events.append({"type": "obstacle", "player": player.id, "obstacle": obstacle.index, "kind": obstacle.type})
    return events


def resolve_clashes(state, player):
    if player.mode != MODE_MULTI:
        return []
    events = []
    for other_id, other in state.players.items():
        if other_id == player.id:
            continue
        if other.mode != MODE_MULTI or other.status != STATUS_PLAYING:
            continue
        if _planar_distance(player.x, player.z, other.x, other.z) >= settings.PLAYER_COLLISION_RADIUS:
            continue
        _add_charge(player, settings.PLAYER_CLASH_CHARGE)
        _add_charge(other, settings.PLAYER_CLASH_CHARGE)
        player.speed = max(settings.MIN_CLASH_SPEED, player.speed * settings.CLASH_SPEED_PENALTY)
        logger.info("%s clashed with %s", player.id, other_id)
        events.append({"type": "clash", "player": player.id, "other": other_id})
    return events


def track_lap(state, player, now):
    if player.z >= -settings.COURSE_LENGTH_Z:
        return []
    player.lap += 1
    player.z += settings.COURSE_LENGTH_Z
    events = [{"type": "lap", "player": player.id, "lap": player.lap}]
    if player.lap >= state.max_lap and player.status == STATUS_PLAYING:
        player.status = STATUS_FINISHED
        if player.finish_time is None:
            player.finish_time = now
        logger.info("%s finished the race.", player.id)
        events.append({"type": "finish", "player": player.id, "finishTime": player.finish_time})
    return events


def handle_sensor(state, player_id, data, now=None):
    """Run one full update for ``player_id``.

    Returns the list of race events produced, or None when the player is
    unknown or not playing and nothing was touched.
    """
    player = state.get_player(player_id)
    if player is None or player.status != STATUS_PLAYING:
        logger.debug("Ignoring sensor data for inactive player %s", player_id)
        return None
    if now is None:
        now = time.time()

    apply_input(player, data)
    events = resolve_obstacles(state, player, now)
    events.extend(resolve_clashes(state, player))
    events.extend(track_lap(state, player, now))
    return events


def _ranking_key(player):
    if player.status == STATUS_FINISHED:
        return (0, player.finish_time or 0.0, 0, 0.0)
    return (1, 0.0, -player.lap, player.z)


def calculate_ranking(state):
    participants = [
        p for p in state.players.values() if p.mode == MODE_MULTI and p.status != STATUS_LOBBY
    ]
    participants.sort(key=_ranking_key)
    count = len(participants)
    ranking = []
    for index, player in enumerate(participants):
        player.final_rank = index + 1
        player.total_points = player.points + (count - index) * settings.RANK_POINT_UNIT
        ranking.append(
            {
                "id": player.id,
                "rank": player.final_rank,
                "points": player.points,
                "totalPoints": player.total_points,
                "lap": player.lap,
                "status": player.status,
            }
        )
    return ranking


def process_due_tasks(state, now=None):
    if now is None:
        now = time.time()
    changed = 0
    for task in state.pop_due_tasks(now):
        if task.kind == TASK_OBSTACLE_REACTIVATE:
            obstacle = state.get_obstacle(task.target)
            if obstacle is None or not obstacle.collided:
                logger.debug("Stale reactivation for obstacle %s", task.target)
                continue
            obstacle.collided = False
            obstacle.reactivate_at = None
            changed += 1
        elif task.kind == TASK_BOOST_EXPIRE:
            player = state.get_player(task.target)
            if player is None or not player.boost_active:
                logger.debug("Stale boost expiry for player %s", task.target)
                continue
            player.effects["speed_x2_active"] = False
            changed += 1
        else:
            logger.warning("Unknown scheduled task kind %r", task.kind)
    return changed

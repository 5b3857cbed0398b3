import logging
import threading
import time

from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room

import settings
from race_logic import calculate_ranking, handle_sensor, process_due_tasks
from race_state import RaceState

logger = logging.getLogger(__name__)

app = Flask(__name__, static_folder=settings.STATIC_FOLDER, static_url_path="")
socketio = SocketIO(app, cors_allowed_origins=settings.CORS_ORIGINS)
state = RaceState()

timer_task_started = False
timer_task_lock = threading.Lock()


def _text(value):
    if value is None:
        return ""
    return str(value).strip()


def _game_state_payload():
    ranking = calculate_ranking(state)
    return state.snapshot(ranking)


def _active_rooms():
    rooms = {player.room for player in state.players.values() if player.room}
    rooms.add(settings.DEFAULT_ROOM)
    return sorted(rooms)


def _timer_loop():
    while True:
        socketio.sleep(settings.TIMER_TICK)
        with state.lock:
            if not process_due_tasks(state, time.time()):
                continue
            payload = _game_state_payload()
            rooms = _active_rooms()
        for room in rooms:
            socketio.emit("game state", payload, to=room)


def _ensure_timer_loop():
    global timer_task_started
    if timer_task_started:
        return
    with timer_task_lock:
        if timer_task_started:
            return
        timer_task_started = True
        socketio.start_background_task(_timer_loop)


@socketio.on("connect")
def handle_connect(auth=None):
    _ensure_timer_loop()
    requested = request.args.get("clientId")
    if not requested and isinstance(auth, dict):
        requested = auth.get("clientId")
    with state.lock:
        player = state.connect(request.sid, requested)
    logger.info("Client %s connected", player.id)
    emit("welcome", {"id": player.id})


@socketio.on("join_game")
def handle_join_game(data):
    payload = data if isinstance(data, dict) else {}
    room = _text(payload.get("room")) or settings.DEFAULT_ROOM
    mode = _text(payload.get("mode")).lower()
    with state.lock:
        player = state.player_for_sid(request.sid)
        if not player:
            return
        state.join(player.id, room, mode)
        player_id = player.id
        mode = player.mode
        game_payload = _game_state_payload()
    join_room(room)
    logger.info("Client %s joined room: %s as %s", player_id, room, mode)
    emit("user joined", {"id": player_id, "mode": mode}, to=room, include_self=False)
    socketio.emit("game state", game_payload, to=room)


@socketio.on("watch")
def handle_watch(data=None):
    payload = data if isinstance(data, dict) else {}
    room = _text(payload.get("room")) or settings.DEFAULT_ROOM
    join_room(room)
    with state.lock:
        game_payload = _game_state_payload()
    emit("game state", game_payload)


@socketio.on("sensor")
def handle_sensor_data(data):
    with state.lock:
        player = state.player_for_sid(request.sid)
        if not player:
            return
        events = handle_sensor(state, player.id, data or {}, time.time())
        if events is None:
            return
        room = player.room or settings.DEFAULT_ROOM
        game_payload = _game_state_payload()
        finish = next((event for event in events if event["type"] == "finish"), None)
    socketio.emit("game state", game_payload, to=room)
    if finish:
        socketio.emit(
            "player finished",
            {
                "id": finish["player"],
                "finishTime": int(finish["finishTime"] * 1000),
                "ranking": game_payload["ranking"],
            },
            to=room,
        )


@socketio.on("request_state")
def handle_request_state(_data=None):
    with state.lock:
        game_payload = _game_state_payload()
    emit("game state", game_payload)


@socketio.on("disconnect")
def handle_disconnect(reason=None):
    with state.lock:
        player_id = state.disconnect(request.sid)
    if player_id is None:
        return
    logger.info("Client %s disconnected", player_id)
    socketio.emit("user left", player_id)


@app.get("/health")
def health_check():
    return {"status": "ok"}


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _ensure_timer_loop()
    logger.info("listening on %s:%d", settings.HOST, settings.PORT)
    socketio.run(app, host=settings.HOST, port=settings.PORT)

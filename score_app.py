#!/usr/bin/env python3
# score_app.py
import atexit
import json
import time

from flask import Flask, jsonify, render_template, request
from flask_sock import Sock

from config import APP_DIR, Config
from game_state import ALLOWED_TARGET_SCORES, Team, parse_team
from presets import PresetStore
from speech import ListenerSource, Speaker
from voice_loop import VoiceLoopController

# JSON key -> controller setter; values must be real booleans
CONFIG_TOGGLES = {
    "win_by_two": "set_win_by_two",
    "three_point_mode": "set_three_point_mode",
    "loud_mode": "set_loud_mode",
    "keep_screen_awake": "set_keep_screen_awake",
    "video_capture_mode": "set_video_capture_mode",
}


def _body() -> dict:
    d = request.get_json(force=True, silent=True)
    return d if isinstance(d, dict) else {}


def _bad(error: str, code: int = 400):
    return jsonify({"ok": False, "error": error}), code


def build_controller(config_class=Config) -> VoiceLoopController:
    """Controller wired to the real recognizer, speaker and preset file."""
    return VoiceLoopController(
        config=config_class,
        speech_source=ListenerSource(config_class.LISTEN_CMD,
                                     queue_size=config_class.EVENT_QUEUE_SIZE,
                                     cwd=str(APP_DIR)),
        speaker=Speaker(config_class.AUDIO_DEV, beep_path=config_class.BEEP_PATH),
        store=PresetStore(config_class.PRESET_FILE),
        export_dir=config_class.EXPORT_DIR,
    )


def create_app(config_class=Config, controller=None):
    app = Flask(__name__, template_folder=str(APP_DIR / "templates"))
    app.config.from_object(config_class)
    sock = Sock(app)

    if controller is None:
        controller = build_controller(config_class)
        app.logger.info(f"voice loop using recognizer: {config_class.LISTEN_CMD}")
        atexit.register(controller.stop)
    app.extensions["voice_loop"] = controller

    ws_clients = set()

    def broadcast(msg: dict):
        dead = []
        for ws in list(ws_clients):
            try:
                ws.send(json.dumps(msg))
            except Exception as exc:
                app.logger.debug(f"dropping websocket client: {exc}")
                dead.append(ws)
        for d in dead:
            ws_clients.discard(d)

    controller.subscribe(lambda state: broadcast({"type": "STATE", "state": state}))

    # ----------- Page -----------
    @app.get("/")
    def index():
        return render_template("index.html")

    # ----------- State -----------
    @app.get("/api/state")
    def api_state():
        return jsonify(controller.public_state())

    @app.get("/api/history")
    def api_history():
        history, session_start = controller.history_snapshot()
        game = controller.game.to_dict()
        game["history"] = [e.to_dict() for e in history]
        return jsonify({"session_start": session_start, "game": game})

    # ----------- Voice -----------
    @app.post("/api/heard")
    def api_heard():
        """Feed a transcript as if the recognizer had produced it."""
        d = _body()
        text = str(d.get("text", "")).strip()
        if not text:
            return _bad("no text")
        try:
            confidence = float(d.get("confidence", 1.0))
        except (TypeError, ValueError):
            return _bad("confidence must be a number")
        outcome = controller.on_transcript(text, confidence)
        return jsonify({"ok": True, "outcome": outcome, "state": controller.public_state()})

    @app.post("/api/mic")
    def api_mic():
        d = _body()
        controller.set_mic_permission(bool(d.get("granted", False)))
        return jsonify({"ok": True, "state": controller.public_state()})

    # ----------- Manual scoring -----------
    @app.post("/api/score/increment")
    def api_increment():
        d = _body()
        team = parse_team(d.get("team"))
        if team is None:
            return _bad("team must be 'A' or 'B'")
        try:
            points = int(d.get("points", 1))
        except (TypeError, ValueError):
            return _bad("points must be 1, 2 or 3")
        if not controller.increment(team, points):
            return _bad("points must be 1, 2 or 3")
        return jsonify({"ok": True, "state": controller.public_state()})

    @app.post("/api/undo")
    def api_undo():
        undone = controller.undo()
        return jsonify({"ok": True, "undone": undone, "state": controller.public_state()})

    @app.post("/api/reset")
    def api_reset():
        controller.reset_game()
        return jsonify({"ok": True, "state": controller.public_state()})

    # ----------- Settings / presets -----------
    @app.post("/api/config")
    def api_config():
        """
        Body: any of {target_score, win_by_two, three_point_mode, team_a_name,
        team_b_name, loud_mode, keep_screen_awake, video_capture_mode}
        Nothing is applied unless the whole body is valid.
        """
        d = _body()
        for key in CONFIG_TOGGLES:
            if key in d and not isinstance(d[key], bool):
                return _bad(f"{key} must be true or false")
        if "target_score" in d:
            try:
                target = int(d["target_score"])
            except (TypeError, ValueError):
                return _bad("target_score must be an integer")
            if target not in ALLOWED_TARGET_SCORES:
                return _bad("target_score must be one of 11, 15, 21")
            controller.set_target_score(target)
        for key, setter in CONFIG_TOGGLES.items():
            if key in d:
                getattr(controller, setter)(d[key])
        if "team_a_name" in d:
            controller.set_team_name(Team.A, str(d["team_a_name"]))
        if "team_b_name" in d:
            controller.set_team_name(Team.B, str(d["team_b_name"]))
        return jsonify({"ok": True, "state": controller.public_state()})

    @app.post("/api/preset/save")
    def api_preset_save():
        ok = controller.save_preset()
        return jsonify({"ok": ok, "state": controller.public_state()})

    @app.post("/api/preset/apply")
    def api_preset_apply():
        ok = controller.apply_preset()
        return jsonify({"ok": ok, "state": controller.public_state()})

    # ----------- Export / TTS -----------
    @app.post("/api/export")
    def api_export():
        d = _body()
        csv_path = controller.export_timeline(d.get("output_dir"))
        return jsonify({"ok": csv_path is not None,
                        "message": controller.public_state()["export_message"]})

    @app.post("/api/say")
    def api_say():
        d = _body()
        text = str(d.get("text", "")).strip()
        if not text:
            return _bad("no text")
        if controller.speaker is None:
            return _bad("speech output unavailable", 503)
        controller.speaker.speak(text, "flush", "manual_say")
        return jsonify({"ok": True})

    # ----------- WebSocket (push state) -----------
    @sock.route("/ws")
    def ws(ws):
        ws_clients.add(ws)
        try:
            ws.send(json.dumps({"type": "STATE", "state": controller.public_state()}))
            while True:
                time.sleep(app.config.get("WS_PING_SEC", 1.0))
                try:
                    ws.send(json.dumps({"type": "PING", "t": time.time()}))
                except Exception:
                    break
        finally:
            ws_clients.discard(ws)

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=Config.PORT)

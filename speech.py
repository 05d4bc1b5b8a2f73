#!/usr/bin/env python3
# speech.py
"""Speech collaborators: the recognizer pipeline and spoken/tone feedback.

The recognizer is an external process (``listen.sh`` by default) printing one
JSON object per line::

    {"type": "TRANSCRIPT", "text": "ten nine", "confidence": 0.82}
    {"type": "ERROR", "code": "no_match"}
    {"type": "LISTENING", "value": true}

``ListenerSource`` owns its lifecycle and hands events to the voice loop
through a bounded queue. ``Speaker`` plays confirmations with pico2wave or
espeak through aplay and reports start/done/error so the voice loop can
ignore its own voice.
"""
from __future__ import annotations

import json
import logging
import os
import queue
import shlex
import subprocess
import tempfile
import threading
from enum import Enum
from shutil import which as shutil_which
from typing import Callable, Optional

log = logging.getLogger(__name__)

RESULT_RESTART_SEC = 0.12


class RecognizerError(str, Enum):
    NETWORK = "network"
    NETWORK_TIMEOUT = "network_timeout"
    AUDIO = "audio"
    CLIENT = "client"
    SERVER = "server"
    NO_MATCH = "no_match"
    SPEECH_TIMEOUT = "speech_timeout"
    BUSY = "busy"
    PERMISSION_MISSING = "permission_missing"
    UNAVAILABLE = "unavailable"

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self]

    @classmethod
    def parse(cls, value) -> "RecognizerError":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CLIENT


ERROR_MESSAGES = {
    RecognizerError.NETWORK: "Network error",
    RecognizerError.NETWORK_TIMEOUT: "Network timeout",
    RecognizerError.AUDIO: "Audio error",
    RecognizerError.CLIENT: "Client error",
    RecognizerError.SERVER: "Server error",
    RecognizerError.NO_MATCH: "No speech match",
    RecognizerError.SPEECH_TIMEOUT: "Speech timeout",
    RecognizerError.BUSY: "Recognizer busy",
    RecognizerError.PERMISSION_MISSING: "Microphone permission missing",
    RecognizerError.UNAVAILABLE: "Speech recognition unavailable on this device",
}

# Errors worth neither a restart nor a status update
QUIET_ERRORS = {RecognizerError.NO_MATCH, RecognizerError.SPEECH_TIMEOUT}


def is_terminal(code: RecognizerError) -> bool:
    return code in (RecognizerError.PERMISSION_MISSING, RecognizerError.UNAVAILABLE)


def restart_delay(code: RecognizerError) -> float:
    if code == RecognizerError.BUSY:
        return 0.25
    if code in QUIET_ERRORS:
        return 0.12
    return 0.35


# ------------------ Speech source ------------------
class SpeechSource:
    """start/stop/destroy lifecycle; delivers events to bound callbacks."""

    def __init__(self):
        self.on_transcript: Callable[[str, float], None] = lambda text, conf: None
        self.on_error: Callable[[RecognizerError], None] = lambda code: None
        self.on_listening_changed: Callable[[bool], None] = lambda listening: None

    def bind(self, on_transcript, on_error, on_listening_changed):
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_listening_changed = on_listening_changed

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def destroy(self):
        self.stop()


class _Runner:
    """One recognizer supervision thread; its stop event and process are its own."""

    def __init__(self):
        self.stop_event = threading.Event()
        self.proc: Optional[subprocess.Popen] = None
        self.thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def terminate(self):
        try:
            if self.proc and self.proc.poll() is None:
                self.proc.terminate()
        except OSError:
            pass


class ListenerSource(SpeechSource):
    """Runs the recognizer command and restarts it with per-error backoff."""

    JOIN_TIMEOUT_SEC = 3.0

    def __init__(self, cmd: str, queue_size: int = 256, cwd: Optional[str] = None):
        super().__init__()
        self.cmd = cmd
        self.cwd = cwd
        self.events: "queue.Queue[dict]" = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._runner: Optional[_Runner] = None
        self._dispatcher = threading.Thread(target=self._dispatch, daemon=True)
        self._dispatcher.start()
        self._destroyed = False

    @property
    def should_listen(self) -> bool:
        runner = self._runner
        return runner is not None and not runner.stopped

    def start(self):
        with self._lock:
            if self._destroyed or self.should_listen:
                return
            runner = _Runner()
            runner.thread = threading.Thread(target=self._run, args=(runner,), daemon=True)
            self._runner = runner
            runner.thread.start()

    def stop(self):
        with self._lock:
            runner, self._runner = self._runner, None
            was_listening = runner is not None and not runner.stopped
            if runner is not None:
                runner.stop_event.set()
                runner.terminate()
            self._drain()
        if runner is not None and runner.thread is not threading.current_thread():
            # The old process must be gone before a new start() spawns another
            runner.thread.join(self.JOIN_TIMEOUT_SEC)
            if runner.thread.is_alive():
                log.warning("recognizer runner did not exit in time")
            self._drain()
        if was_listening:
            self.on_listening_changed(False)

    def destroy(self):
        self.stop()
        self._destroyed = True
        self._put({"type": "_SHUTDOWN"})

    # ---- internals ----
    def _drain(self):
        while True:
            try:
                self.events.get_nowait()
            except queue.Empty:
                return

    def _put(self, evt: dict):
        try:
            self.events.put_nowait(evt)
        except queue.Full:
            # Oldest transcript is the least useful one
            try:
                self.events.get_nowait()
            except queue.Empty:
                pass
            self.events.put_nowait(evt)

    def _run(self, runner: _Runner):
        delay = 0.0
        while not runner.stopped:
            if delay and runner.stop_event.wait(delay):
                break
            delay = self._run_once(runner)
        with self._lock:
            if self._runner is runner:
                self._runner = None

    def _run_once(self, runner: _Runner) -> float:
        """Run the recognizer until it exits; return the restart delay."""
        try:
            proc = subprocess.Popen(
                shlex.split(self.cmd),
                stdout=subprocess.PIPE, stderr=subprocess.DEVNULL,
                cwd=self.cwd, text=True, bufsize=1,
            )
        except (FileNotFoundError, PermissionError) as exc:
            log.warning(f"recognizer command failed to start: {exc}")
            runner.stop_event.set()
            self._put({"type": "ERROR", "code": RecognizerError.UNAVAILABLE.value})
            return 0.0

        with self._lock:
            runner.proc = proc
        try:
            if runner.stopped:
                return 0.0
            self._put({"type": "LISTENING", "value": True})
            delay = self._read_events(runner, proc)
            if not runner.stopped:
                self._put({"type": "LISTENING", "value": False})
            return delay
        finally:
            runner.terminate()
            try:
                proc.wait(self.JOIN_TIMEOUT_SEC)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            proc.stdout.close()

    def _read_events(self, runner: _Runner, proc: subprocess.Popen) -> float:
        delay = restart_delay(RecognizerError.CLIENT)
        for line in proc.stdout:
            if runner.stopped:
                break
            line = line.strip()
            if not line:
                continue
            try:
                evt = json.loads(line)
            except ValueError:
                log.debug(f"[listener] {line}")
                continue
            if not isinstance(evt, dict):
                continue
            kind = str(evt.get("type", "")).upper()
            if kind == "ERROR":
                code = RecognizerError.parse(evt.get("code"))
                if is_terminal(code):
                    runner.stop_event.set()
                    self._put({"type": "ERROR", "code": code.value})
                    break
                self._put({"type": "ERROR", "code": code.value})
                delay = restart_delay(code)
            elif kind == "TRANSCRIPT":
                self._put(evt)
                delay = RESULT_RESTART_SEC
            elif kind == "LISTENING":
                self._put(evt)
        return delay

    def _dispatch(self):
        while True:
            evt = self.events.get()
            kind = evt.get("type")
            if kind == "_SHUTDOWN":
                return
            try:
                if kind == "TRANSCRIPT":
                    conf = evt.get("confidence")
                    self.on_transcript(str(evt.get("text", "")),
                                       float(conf) if conf is not None else 0.7)
                elif kind == "ERROR":
                    self.on_error(RecognizerError.parse(evt.get("code")))
                elif kind == "LISTENING":
                    self.on_listening_changed(bool(evt.get("value")))
            except Exception:
                log.exception(f"voice loop failed handling {kind}")


# ------------------ Speech output ------------------
def play_wav(path: str, audio_dev: str):
    """Play a WAV file quietly and non-blocking."""
    try:
        if path and os.path.isfile(path):
            subprocess.Popen(["aplay", "-q", "-D", audio_dev, path],
                             stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        log.warning(f"tone playback failed: {exc}")


def synth_command(text: str, wav: str):
    if shutil_which("pico2wave"):
        return ["pico2wave", "-w", wav, "-l", "en-US", text]
    if shutil_which("espeak"):
        return ["espeak", "-s", "150", "-v", "en-us+f3", "-w", wav, text]
    return None


class Speaker:
    """Asynchronous TTS. A new utterance flushes the one still playing."""

    def __init__(self, audio_dev: str, beep_path: Optional[str] = None):
        self.audio_dev = audio_dev
        self.beep_path = beep_path
        self.on_start: Callable[[str], None] = lambda uid: None
        self.on_done: Callable[[str], None] = lambda uid: None
        self.on_error: Callable[[str], None] = lambda uid: None
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def bind(self, on_start, on_done, on_error):
        self.on_start, self.on_done, self.on_error = on_start, on_done, on_error

    def speak(self, text: str, mode: str = "flush", utterance_id: str = ""):
        text = str(text or "").strip()
        if not text:
            return
        if mode == "flush":
            self._stop_current()
        threading.Thread(target=self._speak, args=(text, utterance_id), daemon=True).start()

    def play_tone(self):
        if self.beep_path:
            play_wav(self.beep_path, self.audio_dev)

    def shutdown(self):
        self._stop_current()

    def _stop_current(self):
        with self._lock:
            try:
                if self._proc and self._proc.poll() is None:
                    self._proc.terminate()
            except OSError:
                pass

    def _speak(self, text: str, uid: str):
        fd, wav = tempfile.mkstemp(prefix="voice_score_", suffix=".wav")
        os.close(fd)
        try:
            cmd = synth_command(text, wav)
            if not cmd or not shutil_which("aplay"):
                self.on_error(uid)
                return
            subprocess.run(cmd, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            with self._lock:
                self._proc = subprocess.Popen(["aplay", "-q", "-D", self.audio_dev, wav],
                                              stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
                proc = self._proc
            self.on_start(uid)
            rc = proc.wait()
            if rc == 0:
                self.on_done(uid)
            else:
                self.on_error(uid)
        except OSError as exc:
            log.warning(f"speech playback failed: {exc}")
            self.on_error(uid)
        finally:
            try:
                os.remove(wav)
            except OSError:
                pass

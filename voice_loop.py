# voice_loop.py
"""Voice loop controller: transcripts in, committed score transitions out.

Every mutation (recognizer events, speech-output callbacks, timer callbacks,
manual buttons, settings) runs under one lock, so the game state has a
single writer no matter which thread the event came from. Each transcript
walks the same filter chain:

    suppression -> pacing -> confidence -> parse -> no-op
        -> duplicate accept -> rule validation -> commit

Anything that is dropped along the way leaves GameState and history alone.
"""
from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

import score_parse
import score_rules
from config import Config
from game_state import (
    ALLOWED_TARGET_SCORES,
    GameState,
    ScoreEvent,
    Team,
    UpdateSource,
    sanitize_team_name,
)
from presets import PresetStore, PresetStoreError, SavedConfig
from speech import QUIET_ERRORS, RecognizerError, is_terminal
from timeline_export import export_timeline_files
from timers import Scheduler, ThreadingScheduler, TimerSlots

log = logging.getLogger(__name__)

HEARD_TEXT_MAX = 72

TIMER_HIGHLIGHT = "highlight"
TIMER_FLASH = "flash"
TIMER_SUPPRESSION = "suppression"
TIMER_PRESET_STATUS = "preset_status"


class VoiceLoopTone(str, Enum):
    READY = "READY"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ControllerSession:
    """Transient voice-loop bookkeeping. Monotonic seconds unless noted."""

    started_at: float  # wall clock
    tts_speaking: bool = False
    suppress_until: float = 0.0
    last_event_at: Optional[float] = None
    last_accepted: Optional[Tuple[int, int]] = None
    last_accepted_at: Optional[float] = None
    last_rejected_key: Optional[str] = None
    last_rejected_at: Optional[float] = None
    last_soft_key: Optional[str] = None
    last_soft_at: Optional[float] = None
    last_rejected_speech: Optional[str] = None
    last_rejected_speech_at: Optional[float] = None


@dataclass
class VoiceLoopUi:
    game: GameState = field(default_factory=GameState)
    winner: Optional[Team] = None
    game_point_team: Optional[Team] = None
    highlight_team: Optional[Team] = None
    invalid_flash: bool = False
    last_error: Optional[str] = None
    mic_permission_granted: bool = False
    permission_denied: bool = False
    is_listening: bool = False
    loud_mode: bool = False
    keep_screen_awake: bool = True
    video_capture_mode: bool = False
    last_heard_text: Optional[str] = None
    last_interpreted_text: Optional[str] = None
    voice_loop_status: str = "Microphone permission needed."
    voice_loop_hint: str = "Allow the microphone to start listening."
    voice_loop_tone: VoiceLoopTone = VoiceLoopTone.READY
    voice_debug_lines: List[str] = field(default_factory=list)
    has_saved_preset: bool = False
    preset_status_message: Optional[str] = None
    export_message: Optional[str] = None


def _team_value(team: Optional[Team]):
    return team.value if team else None


def truncate(text: str, max_chars: int = HEARD_TEXT_MAX) -> str:
    text = str(text or "")
    return text if len(text) <= max_chars else text[:max_chars] + "..."


def format_numbers(values) -> str:
    return "[" + ", ".join(str(v) for v in values) + "]"


def rejection_hint(message: str) -> str:
    m = message.lower()
    if "too many numbers" in m:
        return "Say only two scores, e.g. two one."
    if "need two scores" in m:
        return "Include both teams, e.g. one zero."
    if "both teams cannot score at once" in m:
        return "Call the next legal score after each basket."
    if "jump too large" in m:
        return "Use the next reachable score, then continue."
    if "no score change" in m:
        return "Say the next score, not the current one."
    return "Try: one zero"


class VoiceLoopController:
    def __init__(self, config=Config, scheduler: Optional[Scheduler] = None,
                 speech_source=None, speaker=None, store: Optional[PresetStore] = None,
                 export_dir: Optional[str] = None):
        self.config = config
        self.lock = threading.RLock()
        self.scheduler = scheduler or ThreadingScheduler()
        self.timers = TimerSlots(self.scheduler, self.lock)
        self.speech_source = speech_source
        self.speaker = speaker
        self.store = store
        self.export_dir = export_dir or getattr(config, "EXPORT_DIR", "exports")
        self.ui = VoiceLoopUi()
        self.session = ControllerSession(started_at=self.scheduler.wall())
        self._listening_requested = False
        self._observers: List[Callable[[dict], None]] = []
        self._depth = 0

        if speech_source is not None:
            speech_source.bind(self.on_transcript, self.on_recognizer_error, self.on_listening_changed)
        if speaker is not None:
            speaker.bind(self.on_speech_start, self.on_speech_done, self.on_speech_error)
        self._restore_last_config()

    # ------------------ plumbing ------------------
    def _setting(self, name: str):
        return getattr(self.config, name, getattr(Config, name))

    def subscribe(self, fn: Callable[[dict], None]):
        self._observers.append(fn)

    @contextmanager
    def _transition(self):
        """Run a mutation under the lock; notify observers once the outermost one exits."""
        with self.lock:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            if self._depth:
                return
            state = self.public_state()
        for fn in list(self._observers):
            try:
                fn(state)
            except Exception:
                log.exception("state observer failed")

    def _now(self) -> float:
        return self.scheduler.monotonic()

    def _debug(self, line: str):
        log.debug(f"[voice] {line}")
        lines = self.ui.voice_debug_lines + [line]
        self.ui.voice_debug_lines = lines[-int(self._setting("MAX_DEBUG_LINES")):]

    def _feedback(self, fn, *args):
        """Fire-and-forget call into a feedback collaborator."""
        try:
            fn(*args)
        except Exception:
            log.exception("feedback collaborator failed")

    def _set_status(self, status: str, hint: str, tone: VoiceLoopTone):
        self.ui.voice_loop_status = status
        self.ui.voice_loop_hint = hint
        self.ui.voice_loop_tone = tone

    # ------------------ public state ------------------
    def public_state(self) -> dict:
        with self.lock:
            ui = self.ui
            return {
                "game": ui.game.to_dict(),
                "winner": _team_value(ui.winner),
                "game_point_team": _team_value(ui.game_point_team),
                "highlight_team": _team_value(ui.highlight_team),
                "invalid_flash": ui.invalid_flash,
                "last_error": ui.last_error,
                "mic_permission_granted": ui.mic_permission_granted,
                "permission_denied": ui.permission_denied,
                "is_listening": ui.is_listening,
                "loud_mode": ui.loud_mode,
                "keep_screen_awake": ui.keep_screen_awake,
                "video_capture_mode": ui.video_capture_mode,
                "last_heard_text": ui.last_heard_text,
                "last_interpreted_text": ui.last_interpreted_text,
                "voice_loop_status": ui.voice_loop_status,
                "voice_loop_hint": ui.voice_loop_hint,
                "voice_loop_tone": ui.voice_loop_tone.value,
                "voice_debug_lines": list(ui.voice_debug_lines),
                "has_saved_preset": ui.has_saved_preset,
                "preset_status_message": ui.preset_status_message,
                "export_message": ui.export_message,
                "session_start": self.session.started_at,
            }

    @property
    def game(self) -> GameState:
        return self.ui.game

    def history_snapshot(self) -> Tuple[Tuple[ScoreEvent, ...], float]:
        with self.lock:
            return self.ui.game.history, self.session.started_at

    # ------------------ transcript pipeline ------------------
    def on_transcript(self, text: str, confidence: float) -> str:
        with self._transition():
            return self._handle_transcript(str(text or ""), float(confidence))

    def _handle_transcript(self, text: str, confidence: float) -> str:
        ui = self.ui
        game = ui.game
        if not ui.mic_permission_granted or not game.game_active or not self._listening_requested:
            return "inactive"

        self._debug(f'heard: "{truncate(text)}" (conf {confidence:.2f})')
        ui.last_heard_text = truncate(text)
        self._set_status("Heard speech", "Parsing numbers...", VoiceLoopTone.READY)

        now = self._now()
        if self._is_suppressed(now):
            self._debug("ignored: self-voice suppression")
            self._soft_status("Listening...", "Hold still and say the full score once.",
                              VoiceLoopTone.READY, "self_suppression")
            return "suppressed"

        s = self.session
        if s.last_event_at is not None and now - s.last_event_at < self._setting("PACING_GUARD_SEC"):
            self._debug("ignored: pacing guard")
            return "paced"
        s.last_event_at = now

        threshold = self._setting("CONFIDENCE_THRESHOLD")
        if not math.isfinite(confidence) or confidence < threshold:
            self._debug(f"ignored: low confidence (< {threshold:.2f})")
            self._soft_status("Could not hear clearly", "Speak a bit slower and closer to the mic.",
                              VoiceLoopTone.WARNING, "low_confidence")
            return "low_confidence"

        parsed = score_parse.parse_with_debug(text)
        numbers = parsed.detected_numbers
        if parsed.parsed_scores is None:
            self._debug(f"parser: {parsed.reason or 'no parse'}; numbers={format_numbers(numbers)}")
            if not numbers:
                self._soft_status("No score numbers heard yet", "Try: one zero",
                                  VoiceLoopTone.READY, "parse_none")
                return "parse_none"
            if len(numbers) < 2:
                self._soft_status("Waiting for second score", "Include both teams, e.g. one zero.",
                                  VoiceLoopTone.READY, f"parse_one_{format_numbers(numbers)}")
                return "parse_partial"
            message = "Rejected: too many numbers, say only two scores"
            self._debug(f"rejected: {message}")
            self._reject(message, flash=False, key=f"parse_too_many_{format_numbers(numbers)}")
            return "too_many"

        new_a, new_b = parsed.parsed_scores
        suffix = f" [{parsed.heuristic}]" if parsed.heuristic else ""
        self._debug(f"parser: interpreted as {new_a}-{new_b}{suffix}")
        ui.last_interpreted_text = f"{new_a}-{new_b}"
        self._set_status(f"Interpreted as {new_a}-{new_b}", "Validating game rules...", VoiceLoopTone.READY)

        if (new_a, new_b) == game.scores:
            self._debug("ignored: no score change")
            self._soft_status("Same score heard", "Say the next score after a basket.",
                              VoiceLoopTone.READY, f"no_change_{new_a}_{new_b}")
            return "no_change"

        window = self._setting("DUPLICATE_ACCEPT_SEC")
        if s.last_accepted == (new_a, new_b) and s.last_accepted_at is not None \
                and now - s.last_accepted_at < window:
            self._debug(f"ignored: duplicate within {window:g}s")
            return "duplicate"

        result = score_rules.validate_voice_transition(game, new_a, new_b)
        if not result.is_valid:
            reason = result.reason or "invalid transition"
            self._debug(f"validation: rejected ({reason})")
            self._reject(f"Rejected: {reason}", flash=True, key=f"validation_{new_a}_{new_b}_{reason}")
            return "rejected"

        s.last_accepted = (new_a, new_b)
        s.last_accepted_at = now
        self._debug("validation: accepted")
        ui.last_error = None
        self._set_status(f"Score updated to {new_a}-{new_b}", "Keep calling the next score.",
                         VoiceLoopTone.SUCCESS)
        self._commit(new_a, new_b, UpdateSource.VOICE, result.scoring_team)
        return "accepted"

    def _is_suppressed(self, now: float) -> bool:
        return self.session.tts_speaking or now < self.session.suppress_until

    def _extend_suppression(self, seconds: float, keep_longer: bool = True):
        now = self._now()
        until = now + seconds
        if keep_longer:
            until = max(self.session.suppress_until, until)
        self.session.suppress_until = until
        self.timers.arm(TIMER_SUPPRESSION, max(0.0, until - now), self._on_suppression_expired)

    def _on_suppression_expired(self):
        with self._transition():
            if self.session.tts_speaking:
                return
            if self.ui.is_listening and self.ui.voice_loop_tone == VoiceLoopTone.READY:
                self._set_status("Listening...", "Say both scores clearly.", VoiceLoopTone.READY)

    def _soft_status(self, status: str, hint: str, tone: VoiceLoopTone, key: str):
        s = self.session
        now = self._now()
        if s.last_soft_at is not None:
            if now - s.last_soft_at < self._setting("SOFT_STATUS_MIN_GAP_SEC"):
                return
            if s.last_soft_key == key and now - s.last_soft_at < self._setting("SOFT_STATUS_REPEAT_SEC"):
                return
        s.last_soft_key = key
        s.last_soft_at = now
        self.ui.last_error = None
        self._set_status(status, hint, tone)

    def _is_repeated_rejection(self, key: str) -> bool:
        s = self.session
        now = self._now()
        if s.last_rejected_key == key and s.last_rejected_at is not None \
                and now - s.last_rejected_at < self._setting("REJECTION_DEDUPE_SEC"):
            self._debug("ignored: repeated rejection")
            return True
        s.last_rejected_key = key
        s.last_rejected_at = now
        return False

    def _reject(self, message: str, flash: bool, key: Optional[str] = None):
        if key and self._is_repeated_rejection(key):
            return
        self._extend_suppression(self._setting("REJECTION_SUPPRESS_SEC"))
        self.ui.last_error = message
        self._set_status(message, rejection_hint(message),
                         VoiceLoopTone.ERROR if flash else VoiceLoopTone.WARNING)

        if self.ui.loud_mode:
            self._speak_rejection(message)

        if flash:
            self.ui.invalid_flash = True
            self.timers.arm(TIMER_FLASH, self._setting("INVALID_FLASH_SEC"), self._clear_flash)

    def _clear_flash(self):
        with self._transition():
            if not self.timers.is_armed(TIMER_FLASH):
                self.ui.invalid_flash = False

    def _speak_rejection(self, message: str):
        s = self.session
        now = self._now()
        if s.last_rejected_speech == message and s.last_rejected_speech_at is not None \
                and now - s.last_rejected_speech_at < self._setting("REJECTED_SPEECH_DEDUPE_SEC"):
            return
        s.last_rejected_speech = message
        s.last_rejected_speech_at = now
        if self.speaker is None:
            return
        spoken = message.removeprefix("Rejected:").strip() or "Rejected update"
        self._feedback(self.speaker.speak, spoken, "flush", "rejected_score_update")

    # ------------------ commit path ------------------
    def _apply_state(self, state: GameState):
        resolved, winner, game_point = score_rules.resolve_game_meta(state)
        self.ui.game = resolved
        self.ui.winner = winner
        self.ui.game_point_team = game_point

    def _commit(self, new_a: int, new_b: int, source: UpdateSource, scoring_team: Optional[Team]):
        old = self.ui.game
        event = ScoreEvent(
            timestamp=self.scheduler.wall(),
            old_score_a=old.team_a_score,
            old_score_b=old.team_b_score,
            new_score_a=new_a,
            new_score_b=new_b,
            source=source,
        )
        self._apply_state(replace(
            old,
            team_a_score=new_a,
            team_b_score=new_b,
            last_update_source=source,
            history=old.history + (event,),
        ))
        ui = self.ui
        ui.highlight_team = scoring_team
        ui.invalid_flash = False
        ui.last_error = None
        if source == UpdateSource.MANUAL:
            self._set_status(f"Score updated manually to {new_a}-{new_b}",
                             "Voice can continue from this score.", VoiceLoopTone.READY)
        log.info(f"[score] {source.value} {old.team_a_score}-{old.team_b_score} -> {new_a}-{new_b}")

        self._refresh_highlight(scoring_team)
        self._refresh_listening()

        if ui.loud_mode and self.speaker is not None:
            self._feedback(self.speaker.play_tone)
            self._feedback(self.speaker.speak, f"{new_a} to {new_b}", "flush", "accepted_score_update")

    def _refresh_highlight(self, team: Optional[Team]):
        self.timers.cancel(TIMER_HIGHLIGHT)
        if team is None:
            return

        def _clear():
            with self._transition():
                if self.ui.highlight_team == team and not self.timers.is_armed(TIMER_HIGHLIGHT):
                    self.ui.highlight_team = None

        self.timers.arm(TIMER_HIGHLIGHT, self._setting("HIGHLIGHT_CLEAR_SEC"), _clear)

    # ------------------ manual actions ------------------
    def increment(self, team: Team, points: int) -> bool:
        if points not in (1, 2, 3):
            return False
        with self._transition():
            game = self.ui.game
            new_a = game.team_a_score + (points if team == Team.A else 0)
            new_b = game.team_b_score + (points if team == Team.B else 0)
            self._commit(new_a, new_b, UpdateSource.MANUAL, team)
            return True

    def undo(self) -> bool:
        with self._transition():
            game = self.ui.game
            if not game.history:
                return False
            event = game.history[-1]
            remaining = game.history[:-1]
            self._apply_state(replace(
                game,
                team_a_score=event.old_score_a,
                team_b_score=event.old_score_b,
                history=remaining,
                last_update_source=remaining[-1].source if remaining else UpdateSource.MANUAL,
            ))
            self.timers.cancel(TIMER_HIGHLIGHT)
            self.timers.cancel(TIMER_FLASH)
            self.ui.highlight_team = None
            self.ui.invalid_flash = False
            self.ui.last_error = None
            self._debug(f"undo: back to {event.old_score_a}-{event.old_score_b}")
            self._refresh_listening()
            return True

    def reset_game(self):
        with self._transition():
            self._start_new_game(self.ui.game.fresh())
            ui = self.ui
            ui.voice_debug_lines = []
            ui.export_message = None
            ui.preset_status_message = None
            self._set_status("Ready. Say both scores.", "Try: one zero", VoiceLoopTone.READY)
            self._debug("game reset")
            self._refresh_listening()

    def _start_new_game(self, state: GameState):
        self.timers.cancel_all()
        self._apply_state(state)
        ui = self.ui
        ui.highlight_team = None
        ui.invalid_flash = False
        ui.last_error = None
        ui.last_heard_text = None
        ui.last_interpreted_text = None
        self._reset_session()

    def _reset_session(self):
        old = self.session
        # Playback state describes the speaker, not the game; carry it over
        self.session = ControllerSession(
            started_at=self.scheduler.wall(),
            tts_speaking=old.tts_speaking,
            suppress_until=old.suppress_until,
        )
        if old.tts_speaking or old.suppress_until > self._now():
            self._extend_suppression(max(0.0, old.suppress_until - self._now()), keep_longer=False)

    # ------------------ configuration ------------------
    def _apply_config_change(self, **changes):
        self._apply_state(replace(self.ui.game, **changes))
        self._persist_last_config()
        self._refresh_listening()

    def set_target_score(self, target: int) -> bool:
        if target not in ALLOWED_TARGET_SCORES:
            return False
        with self._transition():
            self._apply_config_change(target_score=target)
        return True

    def set_win_by_two(self, enabled: bool):
        with self._transition():
            self._apply_config_change(win_by_two=bool(enabled))

    def set_three_point_mode(self, enabled: bool):
        with self._transition():
            self._apply_config_change(three_point_mode=bool(enabled))

    def set_team_name(self, team: Team, raw_name: str) -> bool:
        name = sanitize_team_name(raw_name, team.value)
        attr = "team_a_name" if team == Team.A else "team_b_name"
        with self._transition():
            if getattr(self.ui.game, attr) == name:
                return False
            self._apply_config_change(**{attr: name})
            return True

    def _set_feedback_toggle(self, attr: str, enabled: bool):
        with self._transition():
            setattr(self.ui, attr, bool(enabled))
            self._persist_last_config()

    def set_loud_mode(self, enabled: bool):
        self._set_feedback_toggle("loud_mode", enabled)

    def set_keep_screen_awake(self, enabled: bool):
        self._set_feedback_toggle("keep_screen_awake", enabled)

    def set_video_capture_mode(self, enabled: bool):
        self._set_feedback_toggle("video_capture_mode", enabled)

    # ------------------ persistence ------------------
    def _current_config(self) -> SavedConfig:
        game, ui = self.ui.game, self.ui
        return SavedConfig(
            team_a_name=game.team_a_name,
            team_b_name=game.team_b_name,
            target_score=game.target_score,
            win_by_two=game.win_by_two,
            three_point_mode=game.three_point_mode,
            loud_mode=ui.loud_mode,
            keep_screen_awake=ui.keep_screen_awake,
            video_capture_mode=ui.video_capture_mode,
        )

    def _game_from_config(self, cfg: SavedConfig) -> GameState:
        return GameState(
            team_a_name=cfg.team_a_name,
            team_b_name=cfg.team_b_name,
            target_score=cfg.target_score,
            win_by_two=cfg.win_by_two,
            three_point_mode=cfg.three_point_mode,
        )

    def _apply_feedback_toggles(self, cfg: SavedConfig):
        self.ui.loud_mode = cfg.loud_mode
        self.ui.keep_screen_awake = cfg.keep_screen_awake
        self.ui.video_capture_mode = cfg.video_capture_mode

    def _restore_last_config(self):
        if self.store is None:
            return
        self.ui.has_saved_preset = self.store.has_preset()
        cfg = self.store.load_last()
        if cfg is None:
            return
        self._apply_state(self._game_from_config(cfg))
        self._apply_feedback_toggles(cfg)

    def _persist_last_config(self):
        if self.store is None:
            return
        try:
            self.store.save_last(self._current_config())
        except PresetStoreError as exc:
            log.warning(f"could not persist settings: {exc}")
            self._set_preset_status("Could not save settings")

    def _set_preset_status(self, message: Optional[str]):
        self.timers.cancel(TIMER_PRESET_STATUS)
        self.ui.preset_status_message = message
        if message is None:
            return

        def _clear():
            with self._transition():
                if self.ui.preset_status_message == message \
                        and not self.timers.is_armed(TIMER_PRESET_STATUS):
                    self.ui.preset_status_message = None

        self.timers.arm(TIMER_PRESET_STATUS, self._setting("PRESET_STATUS_SEC"), _clear)

    def save_preset(self) -> bool:
        with self._transition():
            if self.store is None:
                self._set_preset_status("Presets are not available")
                return False
            try:
                self.store.save_preset(self._current_config())
            except PresetStoreError as exc:
                log.warning(f"could not save preset: {exc}")
                self._set_preset_status("Preset save failed")
                return False
            self.ui.has_saved_preset = True
            self._set_preset_status("Preset saved")
            self._persist_last_config()
            self._debug("preset: saved current setup")
            return True

    def apply_preset(self) -> bool:
        with self._transition():
            cfg = self.store.load_preset() if self.store is not None else None
            if cfg is None:
                self.ui.has_saved_preset = False
                self._set_preset_status("No saved preset yet")
                self._debug("preset: no saved setup")
                return False
            self._start_new_game(self._game_from_config(cfg))
            self._apply_feedback_toggles(cfg)
            self.ui.has_saved_preset = True
            self._set_status("Preset loaded. Ready for a new game.", "Say both scores clearly.",
                             VoiceLoopTone.READY)
            self._set_preset_status("Preset loaded")
            self._persist_last_config()
            self._debug("preset: applied saved setup")
            self._refresh_listening()
            return True

    # ------------------ export ------------------
    def export_timeline(self, out_dir: Optional[str] = None) -> Optional[str]:
        with self.lock:
            game = self.ui.game
            session_start = self.session.started_at
            export_time = self.scheduler.wall()
        try:
            paths = export_timeline_files(
                out_dir or self.export_dir, game.history, session_start, export_time,
                game.team_a_score, game.team_b_score, game.team_a_name, game.team_b_name,
            )
            message = f"Exported:\n{paths.csv_path}\n{paths.srt_path}\n{paths.ass_path}\n{paths.notes_path}"
        except (OSError, ValueError) as exc:
            log.warning(f"timeline export failed: {exc}")
            paths, message = None, f"Export failed: {str(exc) or 'unknown error'}"
        with self._transition():
            self.ui.export_message = message
        return paths.csv_path if paths else None

    # ------------------ listening lifecycle ------------------
    def set_mic_permission(self, granted: bool):
        with self._transition():
            ui = self.ui
            ui.mic_permission_granted = bool(granted)
            ui.permission_denied = not granted
            if granted:
                ui.last_error = None
                self._set_status("Ready. Say both scores.", "Try: one zero", VoiceLoopTone.READY)
                self._debug("mic permission: granted")
            else:
                ui.last_error = "Microphone permission denied"
                self._set_status("Microphone permission denied.", "Allow the microphone to continue.",
                                 VoiceLoopTone.ERROR)
                self._debug("mic permission: denied")
            self._refresh_listening()

    def _refresh_listening(self):
        should_listen = self.ui.mic_permission_granted and self.ui.game.game_active
        if should_listen and not self._listening_requested:
            self._listening_requested = True
            if self.speech_source is not None:
                self._feedback(self.speech_source.start)
        elif not should_listen and self._listening_requested:
            self._halt_voice_loop()

    def _halt_voice_loop(self):
        """Stop listening, drop pending timers and queued transcripts."""
        self._listening_requested = False
        self.timers.cancel_all()
        self.ui.is_listening = False
        self.ui.highlight_team = None
        self.ui.invalid_flash = False
        self.ui.preset_status_message = None
        if self.speech_source is not None:
            self._feedback(self.speech_source.stop)

    def on_listening_changed(self, listening: bool):
        with self._transition():
            ui = self.ui
            active = bool(listening) and self._listening_requested \
                and ui.mic_permission_granted and ui.game.game_active
            ui.is_listening = active
            if active and ui.voice_loop_tone == VoiceLoopTone.READY:
                self._set_status("Listening...", "Say both scores clearly.", VoiceLoopTone.READY)

    def on_recognizer_error(self, code: RecognizerError):
        with self._transition():
            ui = self.ui
            self._debug(f"recognizer: {code.message}")
            if code in QUIET_ERRORS:
                return
            if is_terminal(code):
                self._halt_voice_loop()
                if code == RecognizerError.PERMISSION_MISSING:
                    ui.mic_permission_granted = False
                    ui.permission_denied = True
                ui.last_error = code.message
                self._set_status(code.message, "Not listening. Check the microphone and try again.",
                                 VoiceLoopTone.ERROR)
                return
            ui.last_error = code.message
            self._set_status(code.message, "Try speaking again.", VoiceLoopTone.WARNING)

    # ------------------ speech output callbacks ------------------
    def on_speech_start(self, utterance_id: str = ""):
        with self._transition():
            self.session.tts_speaking = True
            self._extend_suppression(self._setting("TTS_SPEAKING_MARGIN_SEC"))

    def on_speech_done(self, utterance_id: str = ""):
        with self._transition():
            self.session.tts_speaking = False
            self._extend_suppression(self._setting("POST_SPEECH_MARGIN_SEC"), keep_longer=False)

    def on_speech_error(self, utterance_id: str = ""):
        self.on_speech_done(utterance_id)

    # ------------------ shutdown ------------------
    def stop(self):
        with self._transition():
            self._halt_voice_loop()
        if self.speech_source is not None:
            self._feedback(self.speech_source.destroy)
        if self.speaker is not None:
            self._feedback(self.speaker.shutdown)

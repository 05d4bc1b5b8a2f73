import threading

import pytest

from game_state import Team, UpdateSource
from speech import RecognizerError
from voice_loop import TIMER_FLASH, TIMER_HIGHLIGHT, VoiceLoopTone, rejection_hint, truncate


def test_accepts_spoken_score(controller):
    assert controller.on_transcript("one zero", 0.9) == "accepted"
    game = controller.game
    assert game.scores == (1, 0)
    assert game.last_update_source == UpdateSource.VOICE
    assert len(game.history) == 1
    event = game.history[0]
    assert (event.old_score_a, event.old_score_b, event.new_score_a, event.new_score_b) == (0, 0, 1, 0)
    assert event.source == UpdateSource.VOICE
    assert controller.ui.highlight_team == Team.A
    assert controller.ui.voice_loop_tone == VoiceLoopTone.SUCCESS
    assert controller.ui.last_interpreted_text == "1-0"


def test_highlight_clears_after_delay(controller, scheduler):
    controller.on_transcript("one zero", 0.9)
    scheduler.advance(0.5)
    assert controller.ui.highlight_team == Team.A
    scheduler.advance(0.25)
    assert controller.ui.highlight_team is None


def test_highlight_is_replaced_by_newer_score(controller, scheduler):
    controller.increment(Team.A, 1)
    scheduler.advance(0.5)
    controller.increment(Team.B, 1)
    scheduler.advance(0.25)
    assert controller.ui.highlight_team == Team.B
    scheduler.advance(0.5)
    assert controller.ui.highlight_team is None


def test_inactive_without_permission(make_controller):
    controller = make_controller(granted=False)
    assert controller.on_transcript("one zero", 0.9) == "inactive"
    assert controller.game.scores == (0, 0)
    assert controller.ui.voice_debug_lines == []


def test_suppressed_while_speaking(controller, scheduler):
    controller.on_speech_start("u1")
    assert controller.on_transcript("one zero", 0.9) == "suppressed"
    controller.on_speech_done("u1")
    scheduler.advance(0.5)
    assert controller.on_transcript("one zero", 0.9) == "suppressed"
    scheduler.advance(0.5)
    assert controller.on_transcript("one zero", 0.9) == "accepted"
    assert controller.game.scores == (1, 0)


def test_speech_error_ends_suppression_like_done(controller, scheduler):
    controller.on_speech_start("u1")
    controller.on_speech_error("u1")
    assert not controller.session.tts_speaking
    scheduler.advance(1.0)
    assert controller.on_transcript("one zero", 0.9) == "accepted"


def test_pacing_guard(controller, scheduler):
    assert controller.on_transcript("one zero", 0.9) == "accepted"
    scheduler.advance(0.5)
    assert controller.on_transcript("two zero", 0.9) == "paced"
    scheduler.advance(0.25)
    assert controller.on_transcript("two zero", 0.9) == "accepted"
    assert controller.game.scores == (2, 0)


def test_low_confidence_is_ignored(controller):
    assert controller.on_transcript("one zero", 0.3) == "low_confidence"
    assert controller.game.scores == (0, 0)
    assert controller.ui.voice_loop_status == "Could not hear clearly"
    assert controller.ui.voice_loop_tone == VoiceLoopTone.WARNING


@pytest.mark.parametrize("confidence", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_confidence_is_low_confidence(controller, confidence):
    assert controller.on_transcript("one zero", confidence) == "low_confidence"
    assert controller.game.history == ()


def test_no_numbers(controller):
    assert controller.on_transcript("check ball", 0.9) == "parse_none"
    assert controller.ui.voice_loop_status == "No score numbers heard yet"
    assert controller.ui.last_error is None


def test_one_number_waits_for_second(controller):
    assert controller.on_transcript("seven", 0.9) == "parse_partial"
    assert controller.ui.voice_loop_status == "Waiting for second score"
    assert controller.game.history == ()


def test_too_many_numbers_rejected_without_flash(controller):
    now = controller.scheduler.monotonic()
    assert controller.on_transcript("one two three", 0.9) == "too_many"
    ui = controller.ui
    assert ui.last_error == "Rejected: too many numbers, say only two scores"
    assert ui.voice_loop_tone == VoiceLoopTone.WARNING
    assert ui.voice_loop_hint == "Say only two scores, e.g. two one."
    assert not ui.invalid_flash
    assert controller.session.suppress_until == pytest.approx(now + 0.9)


def test_repeated_rejection_is_deduped(controller, scheduler):
    controller.on_transcript("one two three", 0.9)
    first_deadline = controller.session.suppress_until
    scheduler.advance(1.0)
    assert controller.on_transcript("one two three", 0.9) == "too_many"
    assert controller.session.suppress_until == first_deadline
    assert "ignored: repeated rejection" in controller.ui.voice_debug_lines
    scheduler.advance(0.75)
    assert controller.on_transcript("one zero", 0.9) == "accepted"


def test_same_score_is_no_change(controller):
    assert controller.on_transcript("zero zero", 0.9) == "no_change"
    assert controller.game.history == ()


def test_duplicate_accept_window(controller, scheduler):
    assert controller.on_transcript("one zero", 0.9) == "accepted"
    controller.undo()
    scheduler.advance(1.0)
    assert controller.on_transcript("one zero", 0.9) == "duplicate"
    assert controller.game.scores == (0, 0)
    scheduler.advance(2.0)
    assert controller.on_transcript("one zero", 0.9) == "accepted"


def test_same_pair_after_window_is_no_change(controller, scheduler):
    assert controller.on_transcript("one zero", 0.9) == "accepted"
    scheduler.advance(3.5)
    assert controller.on_transcript("one zero", 0.9) == "no_change"
    assert len(controller.game.history) == 1


def test_invalid_transition_flashes_and_keeps_state(controller, scheduler):
    before = controller.game
    assert controller.on_transcript("five zero", 0.9) == "rejected"
    ui = controller.ui
    assert controller.game == before
    assert ui.invalid_flash
    assert ui.last_error == "Rejected: Jump too large"
    assert ui.voice_loop_tone == VoiceLoopTone.ERROR
    assert controller.timers.is_armed(TIMER_FLASH)
    scheduler.advance(0.25)
    assert not ui.invalid_flash


def test_rejection_suppresses_following_transcript(controller, scheduler):
    controller.on_transcript("five zero", 0.9)
    scheduler.advance(0.75)
    assert controller.on_transcript("one zero", 0.9) == "suppressed"
    scheduler.advance(0.25)
    assert controller.on_transcript("one zero", 0.9) == "accepted"


def test_undo_restores_previous_state_exactly(controller):
    before = controller.game
    controller.on_transcript("one zero", 0.9)
    assert controller.undo() is True
    assert controller.game == before
    assert controller.ui.highlight_team is None
    assert not controller.timers.is_armed(TIMER_HIGHLIGHT)
    assert controller.undo() is False


def test_undo_restores_source_of_previous_event(controller, scheduler):
    controller.increment(Team.A, 1)
    scheduler.advance(1.0)
    controller.on_transcript("one one", 0.9)
    scheduler.advance(1.0)
    controller.increment(Team.B, 2)
    controller.undo()
    assert controller.game.scores == (1, 1)
    assert controller.game.last_update_source == UpdateSource.VOICE


def test_manual_increment(controller):
    assert controller.increment(Team.B, 3) is True
    assert controller.game.scores == (0, 3)
    assert controller.game.history[-1].source == UpdateSource.MANUAL
    assert controller.ui.voice_loop_status == "Score updated manually to 0-3"
    assert controller.increment(Team.A, 4) is False
    assert controller.increment(Team.A, 0) is False
    assert controller.game.scores == (0, 3)


def test_win_stops_listening_and_undo_resumes(controller, speech_source):
    controller.set_target_score(11)
    for points in (3, 3, 3, 1, 2):
        controller.increment(Team.A, points)
    assert controller.ui.winner == Team.A
    assert not controller.game.game_active
    assert speech_source.stopped == 1
    assert controller.on_transcript("twelve zero", 0.9) == "inactive"

    controller.undo()
    assert controller.game.game_active
    assert controller.ui.winner is None
    assert controller.ui.game_point_team == Team.A
    assert speech_source.started == 2


def test_winning_voice_update(controller, scheduler):
    controller.set_target_score(11)
    controller.set_three_point_mode(True)
    for points in (3, 3, 3):
        controller.increment(Team.B, points)
    controller.increment(Team.A, 1)
    assert controller.ui.game_point_team is None
    controller.increment(Team.B, 1)
    assert controller.ui.game_point_team == Team.B
    assert controller.on_transcript("one eleven", 0.9) == "accepted"
    assert controller.ui.winner == Team.B
    assert not controller.ui.is_listening


def test_reset_keeps_names_and_rules(controller, scheduler):
    controller.set_team_name(Team.A, "  Hawks  ")
    controller.set_three_point_mode(True)
    controller.set_target_score(15)
    controller.increment(Team.A, 2)
    controller.reset_game()
    game = controller.game
    assert game.scores == (0, 0)
    assert game.history == ()
    assert game.team_a_name == "Hawks"
    assert game.three_point_mode
    assert game.target_score == 15
    assert controller.ui.voice_loop_status == "Ready. Say both scores."
    assert controller.ui.voice_debug_lines == ["game reset"]
    assert scheduler.pending == 0


def test_reset_keeps_self_voice_suppression(controller, scheduler):
    controller.on_speech_start("u1")
    controller.reset_game()
    assert controller.on_transcript("one zero", 0.9) == "suppressed"


def test_settings_validation(controller):
    assert controller.set_target_score(30) is False
    assert controller.game.target_score == 21
    assert controller.set_team_name(Team.B, "   ") is False
    assert controller.game.team_b_name == "B"
    assert controller.set_team_name(Team.B, " Crows ") is True
    assert controller.game.team_b_name == "Crows"
    controller.set_team_name(Team.A, "x" * 40)
    assert len(controller.game.team_a_name) == 16


def test_quiet_recognizer_error_only_logs(controller):
    status = controller.ui.voice_loop_status
    controller.on_recognizer_error(RecognizerError.NO_MATCH)
    assert controller.ui.voice_loop_status == status
    assert controller.ui.voice_debug_lines[-1] == "recognizer: No speech match"


def test_transient_recognizer_error_warns(controller):
    controller.on_recognizer_error(RecognizerError.NETWORK)
    assert controller.ui.voice_loop_tone == VoiceLoopTone.WARNING
    assert controller.ui.voice_loop_hint == "Try speaking again."
    assert controller.ui.last_error == "Network error"


def test_permission_error_stops_voice_loop(controller, scheduler, speech_source):
    controller.on_listening_changed(True)
    assert controller.ui.is_listening
    controller.on_transcript("five zero", 0.9)
    controller.increment(Team.A, 1)
    assert scheduler.pending > 0
    controller.on_recognizer_error(RecognizerError.PERMISSION_MISSING)
    ui = controller.ui
    assert scheduler.pending == 0
    assert speech_source.stopped == 1
    assert ui.highlight_team is None
    assert not ui.invalid_flash
    assert not ui.is_listening
    assert not ui.mic_permission_granted
    assert ui.permission_denied
    assert ui.voice_loop_tone == VoiceLoopTone.ERROR
    assert controller.on_transcript("one zero", 0.9) == "inactive"


def test_listening_status(controller):
    controller.on_listening_changed(True)
    assert controller.ui.is_listening
    assert controller.ui.voice_loop_status == "Listening..."
    controller.on_listening_changed(False)
    assert not controller.ui.is_listening


def test_revoking_permission_cancels_timers(controller, scheduler, speech_source):
    controller.on_transcript("five zero", 0.9)
    assert scheduler.pending > 0
    controller.set_mic_permission(False)
    assert scheduler.pending == 0
    assert not controller.ui.invalid_flash
    assert speech_source.stopped == 1
    assert controller.ui.voice_loop_status == "Microphone permission denied."


def test_loud_mode_speaks_feedback(controller, scheduler, speaker):
    controller.set_loud_mode(True)
    controller.on_transcript("one zero", 0.9)
    assert speaker.tones == 1
    assert speaker.spoken == [("1 to 0", "accepted_score_update")]
    scheduler.advance(1.0)
    controller.on_transcript("five zero", 0.9)
    assert speaker.spoken[-1] == ("Jump too large", "rejected_score_update")


def test_quiet_mode_stays_silent(controller, speaker):
    controller.on_transcript("one zero", 0.9)
    assert speaker.spoken == []
    assert speaker.tones == 0


def test_observers_get_state_after_each_change(controller):
    seen = []
    controller.subscribe(seen.append)
    controller.on_transcript("one zero", 0.9)
    assert seen[-1]["game"]["team_a_score"] == 1
    assert seen[-1]["highlight_team"] == "A"


def _lock_is_free(lock):
    free = []

    def try_lock():
        got = lock.acquire(blocking=False)
        free.append(got)
        if got:
            lock.release()

    t = threading.Thread(target=try_lock)
    t.start()
    t.join()
    return free[0]


def test_observers_run_without_the_lock(controller, scheduler):
    seen = []
    controller.subscribe(lambda state: seen.append(_lock_is_free(controller.lock)))
    controller.increment(Team.A, 1)
    scheduler.advance(1.0)
    controller.set_mic_permission(False)
    assert len(seen) == 3
    assert all(seen)


def test_nested_transitions_notify_once(controller, speech_source):
    seen = []
    controller.subscribe(seen.append)
    controller.set_mic_permission(False)
    assert speech_source.stopped == 1
    assert len(seen) == 1
    assert seen[0]["is_listening"] is False


def test_apply_preset_without_saved_one(controller):
    assert controller.apply_preset() is False
    assert controller.ui.preset_status_message == "No saved preset yet"


def test_save_and_apply_preset(controller, scheduler):
    controller.set_team_name(Team.A, "Hawks")
    controller.set_target_score(11)
    assert controller.save_preset() is True
    assert controller.ui.has_saved_preset
    assert controller.ui.preset_status_message == "Preset saved"

    controller.set_team_name(Team.A, "Owls")
    controller.set_target_score(15)
    controller.increment(Team.B, 2)
    assert controller.apply_preset() is True
    game = controller.game
    assert (game.team_a_name, game.target_score, game.scores) == ("Hawks", 11, (0, 0))
    assert controller.ui.preset_status_message == "Preset loaded"
    scheduler.advance(2.5)
    assert controller.ui.preset_status_message is None


def test_last_config_restored_on_startup(make_controller):
    first = make_controller()
    first.set_team_name(Team.B, "Crows")
    first.set_win_by_two(False)
    first.set_video_capture_mode(True)
    second = make_controller()
    assert second.game.team_b_name == "Crows"
    assert not second.game.win_by_two
    assert second.ui.video_capture_mode
    assert second.game.scores == (0, 0)


def test_export_timeline(controller, tmp_path):
    controller.increment(Team.A, 2)
    csv_path = controller.export_timeline(str(tmp_path / "out"))
    assert csv_path is not None
    assert csv_path.endswith(".csv")
    assert controller.ui.export_message.startswith("Exported:")
    assert (tmp_path / "out").is_dir()


def test_export_failure_sets_message(controller, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    assert controller.export_timeline(str(blocker / "sub")) is None
    assert controller.ui.export_message.startswith("Export failed:")


def test_stop_destroys_collaborators(controller, speech_source):
    controller.stop()
    assert speech_source.destroyed == 1
    assert not controller.ui.is_listening


def test_helpers():
    assert truncate("x" * 80).endswith("...")
    assert rejection_hint("Rejected: Jump too large") == "Use the next reachable score, then continue."
    assert rejection_hint("anything") == "Try: one zero"

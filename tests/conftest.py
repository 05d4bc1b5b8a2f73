import pytest

from config import Config
from presets import PresetStore
from score_app import create_app
from speech import SpeechSource
from timers import VirtualScheduler
from voice_loop import VoiceLoopController


class TestConfig(Config):
    TESTING = True


class FakeSpeechSource(SpeechSource):
    def __init__(self):
        super().__init__()
        self.started = 0
        self.stopped = 0
        self.destroyed = 0

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1
        if self.started >= self.stopped:
            self.on_listening_changed(False)

    def destroy(self):
        self.destroyed += 1


class FakeSpeaker:
    def __init__(self):
        self.spoken = []
        self.tones = 0
        self.on_start = self.on_done = self.on_error = None

    def bind(self, on_start, on_done, on_error):
        self.on_start, self.on_done, self.on_error = on_start, on_done, on_error

    def speak(self, text, mode="flush", utterance_id=""):
        self.spoken.append((text, utterance_id))

    def play_tone(self):
        self.tones += 1

    def shutdown(self):
        pass


@pytest.fixture()
def scheduler():
    return VirtualScheduler()


@pytest.fixture()
def speech_source():
    return FakeSpeechSource()


@pytest.fixture()
def speaker():
    return FakeSpeaker()


@pytest.fixture()
def store(tmp_path):
    return PresetStore(tmp_path / "prefs.json")


@pytest.fixture()
def make_controller(scheduler, speech_source, speaker, store, tmp_path):
    def _make(granted=True, **overrides):
        kwargs = dict(
            config=TestConfig,
            scheduler=scheduler,
            speech_source=speech_source,
            speaker=speaker,
            store=store,
            export_dir=str(tmp_path / "exports"),
        )
        kwargs.update(overrides)
        controller = VoiceLoopController(**kwargs)
        if granted:
            controller.set_mic_permission(True)
        return controller
    return _make


@pytest.fixture()
def controller(make_controller):
    return make_controller()


@pytest.fixture()
def flask_app(controller):
    return create_app(TestConfig, controller=controller)


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()

import concurrent.futures
import shutil
import time
import pytest
import yaml
from pathlib import Path
from vhoster.config.models import AppConfig
from vhoster.domain.errors import TranscodeError
from vhoster.domain.models import TranscodeStrategy
from vhoster.infrastructure.event_bus import EventBus
from vhoster.infrastructure.media_store import MediaStore
from vhoster.infrastructure.metadata_registry import MetadataRegistry
from vhoster.pipeline.jobs import JobRegistry

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns an AppConfig rooted in a temporary directory."""
    return AppConfig(
        server={"host": "127.0.0.1", "port": 0, "ws_port": 0},
        storage={
            "uploads_dir": tmp_path / "uploads",
            "data_file": tmp_path / "data.json",
            "chunk_size": 1024,
        },
        transcode={
            "supported_extensions": [".mp4", ".mov", ".webm"],
            "poll_interval_s": 0.1,
            "max_workers": 1,
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "vhoster.yaml"

    content = {
        'server': {
            'host': '127.0.0.1',
            'port': 8080,
            'ws_port': 8081,
            'public_base_url': 'https://media.example.com/',
        },
        'storage': {
            'uploads_dir': str(tmp_path / "media"),
            'data_file': str(tmp_path / "media.json"),
        },
        'transcode': {
            'strategy': 'reencode',
            'supported_extensions': ['mp4', 'WEBM'],
            'max_workers': 3,
        },
        'webhook': {
            'timeout_s': 5,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Core component Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def media_store(sample_config):
    store = MediaStore(sample_config.storage.uploads_dir, chunk_size=sample_config.storage.chunk_size)
    store.ensure_ready()
    return store

@pytest.fixture
def metadata_registry(sample_config):
    registry = MetadataRegistry(sample_config.storage.data_file)
    registry.ensure_ready()
    return registry


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def job_registry(event_bus, clock):
    return JobRegistry(event_bus, clock=clock)


class FakeConnection:
    """Status channel connection that records every message sent to it.

    ``delay`` makes each send block like a peer with a full TCP window.
    """

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent = []
        self.fail = fail
        self.delay = delay

    def send(self, message: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError("peer went away")
        self.sent.append(message)


@pytest.fixture
def connection():
    return FakeConnection()

@pytest.fixture
def connection_factory():
    return FakeConnection

# ============================================================================
# Fake transcode engine (no ffmpeg needed)
# ============================================================================

class FakeEngine:
    """Stands in for FFmpegAdapter: copies input to output in a worker thread.

    Set ``fail`` to make every conversion end in TranscodeError.
    """

    def __init__(self, fail: bool = False, strategy: TranscodeStrategy = TranscodeStrategy.REMUX):
        self.fail = fail
        self.strategy = strategy
        self.calls = []
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)

    def start(self, input_path, output_path, callbacks):
        self.calls.append((Path(input_path), Path(output_path)))
        return self._executor.submit(self.run, Path(input_path), Path(output_path), callbacks)

    def run(self, input_path, output_path, callbacks):
        callbacks.on_start(self.strategy, ["ffmpeg", "-i", str(input_path), str(output_path)])
        callbacks.on_progress(50, "00:00:01.00", False)
        if self.fail:
            error = TranscodeError("ffmpeg exited with code 1", 1, ["Invalid data found when processing input"])
            callbacks.on_error(error)
            raise error
        shutil.copyfile(input_path, output_path)
        callbacks.on_end()
        return output_path

    def shutdown(self, wait=False):
        self._executor.shutdown(wait=wait)


@pytest.fixture
def fake_engine():
    engine = FakeEngine()
    yield engine
    engine.shutdown(wait=True)

@pytest.fixture
def failing_engine():
    engine = FakeEngine(fail=True)
    yield engine
    engine.shutdown(wait=True)

# ============================================================================
# Marker registration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (integration tests with real ffmpeg)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )

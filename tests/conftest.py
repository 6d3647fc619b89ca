"""
Pytest configuration and fixtures for BookBrew Backend tests.
"""

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_ROOT = tempfile.mkdtemp(prefix="bookbrew_test_")
os.environ["BOOKBREW__STORAGE__ARTIFACT_ROOT"] = os.path.join(TEST_ROOT, "artifacts")
os.environ["BOOKBREW__STORAGE__LEDGER_PATH"] = os.path.join(TEST_ROOT, "jobs.db")

from bookbrew_backend.build_service import BuildService
from bookbrew_backend.configuration import load_settings
from bookbrew_backend.errors import RenderCanceled
from bookbrew_backend.job_scheduler import JobScheduler
from bookbrew_backend.main import app, get_build_service
from bookbrew_backend.models import BuildKind, BuildRequest, TemplateSelection
from bookbrew_backend.renderer import RendererAdapter


class FakeRenderer(RendererAdapter):
    """
    In-process renderer that records its calls.

    Args:
        delay: Seconds each render sleeps
        failures: Exceptions raised by successive calls, then renders succeed
        gate: When given, renders block until the event is set
        cancellable: Whether the renderer honours cancel_event while gated
    """

    def __init__(self, delay=0.0, failures=None, gate=None, cancellable=False):
        self.delay = delay
        self.failures = list(failures or [])
        self.gate = gate
        self.supports_cancellation = cancellable
        self.calls = 0
        self.contents = []
        self.work_dirs = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def render(self, request, work_dir, *, timeout=None, cancel_event=None):
        with self._lock:
            self.calls += 1
            self.contents.append(request.source_content)
            self.work_dirs.append(work_dir)
            failure = self.failures.pop(0) if self.failures else None
        fresh = work_dir.is_dir() and not any(work_dir.iterdir())
        (work_dir / "content.md").write_bytes(request.source_content)
        self.started.set()

        if self.gate is not None:
            while not self.gate.wait(0.01):
                if self.supports_cancellation and cancel_event is not None and cancel_event.is_set():
                    raise RenderCanceled("Render canceled by request")
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            raise failure
        if not fresh:
            raise AssertionError(f"Scratch directory {work_dir} was not fresh")
        return b"%PDF-1.4\n" + request.kind.value.encode() + b"\n" + request.source_content + b"\n%%EOF\n"

    def release(self):
        if self.gate is not None:
            self.gate.set()


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeS3Client:
    """Records uploads and signs URLs without talking to AWS."""

    def __init__(self):
        self.uploads = []

    def put_object(self, **kwargs):
        self.uploads.append(kwargs)
        return {"ETag": '"fake"'}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3.example.com/{Params['Key']}?expires={ExpiresIn}"


def build_request(kind=BuildKind.CONVERT, content=b"# My Book\n\nOnce upon a time.", requester_id=None, **template):
    """Build a request with sensible template defaults for its kind."""
    defaults = {
        BuildKind.CONVERT: {"layout": "novel"},
        BuildKind.COMPILE_COVER: {"cover": "classic"},
        BuildKind.IMPOSE: {"layout": "novel", "impose": "a5-4spread"},
    }[kind]
    return BuildRequest(
        kind=kind,
        source_content=content,
        template=TemplateSelection(**{**defaults, **template}),
        requester_id=requester_id,
    )


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the directories used by the module-level app."""
    yield TEST_ROOT
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    """Settings isolated in tmp_path; keyword arguments are extra overrides."""

    def factory(**overrides):
        base = {
            "storage": {"artifact_root": str(tmp_path / "artifacts"), "ledger_path": None},
            "renderer": {
                "typeset_dir": str(tmp_path / "typeset"),
                "user_templates_dir": str(tmp_path / "user_templates"),
                "uploads_dir": str(tmp_path / "uploads"),
            },
            "scheduler": {"max_concurrent_renders": 2, "retry_backoff_seconds": 0.01},
        }
        return load_settings({**base, **overrides}, environ={})

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_renderer():
    """Create FakeRenderers whose gates are opened at teardown."""
    created = []

    def factory(**kwargs):
        renderer = FakeRenderer(**kwargs)
        created.append(renderer)
        return renderer

    yield factory
    for renderer in created:
        renderer.release()


@pytest.fixture
def renderer(make_renderer):
    return make_renderer()


@pytest.fixture
def make_scheduler(settings, clock, make_renderer):
    """Create schedulers that are shut down at teardown."""
    created = []

    def factory(renderer=None, run_settings=None, ledger=None):
        renderer = renderer or make_renderer()
        scheduler = JobScheduler.from_settings(run_settings or settings, renderer, ledger=ledger, clock=clock)
        created.append((scheduler, renderer))
        return scheduler

    yield factory
    for scheduler, renderer in created:
        renderer.release()
        scheduler.shutdown(wait=True)


@pytest.fixture
def scheduler(make_scheduler, renderer):
    return make_scheduler(renderer)


@pytest.fixture
def make_service(settings, clock, make_renderer):
    """Create BuildServices that are shut down at teardown."""
    created = []

    def factory(renderer=None, run_settings=None, s3_client=None):
        renderer = renderer or make_renderer()
        service = BuildService.from_settings(run_settings or settings, renderer=renderer, s3_client=s3_client, clock=clock)
        created.append((service, renderer))
        return service

    yield factory
    for service, renderer in created:
        renderer.release()
        service.shutdown()


@pytest.fixture
def service(make_service, renderer):
    return make_service(renderer)


@pytest.fixture
def make_client():
    """Create a test client for the FastAPI app backed by a given service."""

    def factory(build_service):
        app.dependency_overrides[get_build_service] = lambda: build_service
        return TestClient(app)

    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client, service):
    return make_client(service)


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def typeset_dir(settings):
    """System templates laid out like the production typeset directory."""
    root = Path(settings.renderer.typeset_dir)
    (root / "layout").mkdir(parents=True)
    (root / "cover").mkdir(parents=True)
    (root / "impose").mkdir(parents=True)
    (root / "layout" / "novel.tex").write_text(
        "% Title: Novel\n"
        "% Author: BookBrew\n"
        "\\newif\\ifdropcaps \\dropcapstrue\n"
        "\\title{{{titre}}}\n"
        "\\author{{{auteur}}}\n"
        "\\input{content.tex}\n",
        encoding="utf-8",
    )
    (root / "cover" / "classic.tex").write_text(
        "% Title: Classic cover\n\\newif\\ifback \\backfalse\n{{titre}} {{imagecouv}} {{spineThickness}}\n",
        encoding="utf-8",
    )
    (root / "impose" / "a5-4spread.tex").write_text(
        "\\newcommand{\\compensation}{0mm}\n\\includepdf[pages=-]{export.pdf}\n",
        encoding="utf-8",
    )
    (root / "impose" / "a5-16signature.tex").write_text(
        "\\includepdf[pages=-,signature=16]{export.pdf}\n",
        encoding="utf-8",
    )
    return root

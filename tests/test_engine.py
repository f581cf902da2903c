import io
import json

import pytest
from PIL import Image

from photostyle.config import Settings
from photostyle.errors import ErrorKind
from photostyle.main import build_engine
from photostyle.schemas import PendingJob, ProjectStatus
from photostyle.state_machine import Phase

from conftest import enveloped_body, make_jpeg

@pytest.fixture
def cfg(tmp_path):
    return Settings(DATA_DIR=str(tmp_path / "data"), API_BASE_URL="http://api.test", LEGACY_DATA_DIR="")

@pytest.fixture
def engine_factory(cfg, session):
    engines = []

    def factory(**kwargs):
        engine = build_engine(lambda: "token", cfg=kwargs.pop("cfg", cfg), session=session,
                              configure_logging=False, **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for e in engines:
        e.shutdown()

def test_submit_anime_style_end_to_end(engine_factory, transport):
    red = make_jpeg(color=(255, 0, 0), size=(10, 10))
    transport.queue(200, enveloped_body(red))
    engine = engine_factory()

    engine.state.start("anime-style", "Anime Style", make_jpeg(size=(64, 48)))
    engine.runner.drain(timeout=10)

    state = engine.state.state
    assert state.phase == Phase.COMPLETED
    assert state.project.template_id == "anime-style"
    assert state.project.status == ProjectStatus.COMPLETED

    data = engine.store.get_image(state.project.id)
    assert data is not None
    with Image.open(io.BytesIO(data)) as img:
        assert img.size == (10, 10)
        r, g, b = img.convert("RGB").getpixel((5, 5))
        assert r > 200 and g < 60 and b < 60

def test_model_unavailable_scenario(engine_factory, transport):
    transport.queue(500, {"error": "model unavailable"})
    engine = engine_factory()

    job_id = engine.state.start("anime-style", "Anime Style", make_jpeg())
    engine.runner.drain(timeout=10)

    assert engine.state.state.phase == Phase.FAILED
    assert engine.state.state.error_kind == ErrorKind.INVALID_RESPONSE
    assert engine.registry.get(job_id) is None
    assert engine.store.get_all() == []

def test_endpoint_from_settings(engine_factory, transport):
    transport.queue(200, enveloped_body(make_jpeg()))
    engine = engine_factory()
    engine.runner.submit("anime-style", "Anime Style", make_jpeg())
    engine.runner.drain(timeout=10)
    request, timeout = transport.requests[0]
    assert request.url == "http://api.test/v1/images/process"
    assert timeout == (60.0, 300.0)

def test_restart_resumes_outstanding_job(engine_factory, cfg, transport, tmp_path):
    first = engine_factory()
    asset = tmp_path / "data" / "scratch" / "job-1-original.jpg"
    asset.write_bytes(make_jpeg())
    # registered, then the process died before any completion arrived
    first.registry.put(PendingJob(id="job-1", template_id="anime-style", template_name="Anime Style",
                                  original_asset_path=str(asset)))
    first.shutdown()

    transport.queue(200, enveloped_body(make_jpeg()))
    second = engine_factory()
    assert second.start() == 1
    second.runner.drain(timeout=10)

    assert second.state.state.phase == Phase.COMPLETED
    assert len(second.store.get_all()) == 1
    committed = json.loads((tmp_path / "data" / "committed_jobs.json").read_text())
    assert committed == ["job-1"]

def test_legacy_projects_migrated_on_build(engine_factory, tmp_path):
    legacy = tmp_path / "old-projects"
    legacy.mkdir()
    (legacy / "p1.jpg").write_bytes(make_jpeg())
    (legacy / "projects.json").write_text(json.dumps([
        {"id": "p1", "templateId": "anime-style", "templateName": "Anime Style",
         "createdAt": "2025-05-01T08:00:00Z", "status": "completed"},
    ]))
    cfg = Settings(DATA_DIR=str(tmp_path / "data"), LEGACY_DATA_DIR=str(legacy))

    engine = engine_factory(cfg=cfg)
    assert [p.id for p in engine.store.get_all()] == ["p1"]
    assert not legacy.exists()

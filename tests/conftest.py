import base64
import io
import json

import pytest
import requests
from PIL import Image
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from photostyle.committed import MemoryCommittedJobIds
from photostyle.events import JobEvents
from photostyle.project_store import ProjectStore
from photostyle.registry import PendingJobRegistry
from photostyle.storage import JobJournal
from photostyle.transfer import TransferTaskRunner

def make_jpeg(color=(255, 0, 0), size=(10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()

def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

def metadata(template_id="anime-style", template_name="Anime Style"):
    return {
        "template_id": template_id,
        "template_name": template_name,
        "model_used": "gemini-2.5-flash-image",
        "generation_time_ms": 4200,
        "processed_dimensions": {"width": 10, "height": 10},
    }

def enveloped_body(image: bytes, **meta_kwargs) -> dict:
    return {
        "success": True,
        "data": {
            "processed_image_base64": "data:image/jpeg;base64," + b64(image),
            "metadata": metadata(**meta_kwargs),
        },
        "meta": {"requestId": "abc123", "timestamp": "2026-01-01T00:00:00Z"},
    }

class FakeTransport(BaseAdapter):
    """Answers requests from a queue of (status, body) pairs or exceptions."""

    def __init__(self):
        super().__init__()
        self.queued = []
        self.requests = []

    def queue(self, status, body):
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.queued.append((status, body))

    def queue_error(self, exc):
        self.queued.append(exc)

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.requests.append((request, timeout))
        item = self.queued.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        resp = requests.Response()
        resp.status_code = status
        resp.reason = "OK" if status < 400 else "Error"
        resp.headers = CaseInsensitiveDict({"Content-Type": "application/json"})
        resp.raw = io.BytesIO(body)
        resp.url = request.url
        resp.request = request
        resp.encoding = "utf-8"
        return resp

    def close(self):
        pass

@pytest.fixture
def red_jpeg():
    return make_jpeg()

@pytest.fixture
def transport():
    return FakeTransport()

@pytest.fixture
def session(transport):
    s = requests.Session()
    s.mount("http://", transport)
    s.mount("https://", transport)
    return s

@pytest.fixture
def committed():
    return MemoryCommittedJobIds()

@pytest.fixture
def store(tmp_path, committed):
    return ProjectStore(tmp_path / "projects", committed=committed)

@pytest.fixture
def journal(tmp_path):
    return JobJournal(str(tmp_path / "jobs.sqlite3"))

@pytest.fixture
def registry(journal):
    return PendingJobRegistry(journal=journal)

@pytest.fixture
def events():
    return JobEvents()

@pytest.fixture
def make_runner(tmp_path, session, registry, store, events):
    runners = []

    def factory(**kwargs):
        params = dict(
            url="http://api.test/v1/images/process",
            token_provider=lambda: "test-token",
            registry=registry,
            store=store,
            events=events,
            scratch_dir=tmp_path / "scratch",
            session=session,
        )
        params.update(kwargs)
        runner = TransferTaskRunner(**params)
        runners.append(runner)
        return runner

    yield factory
    for r in runners:
        r.shutdown(wait=True)

@pytest.fixture
def runner(make_runner):
    return make_runner()

import threading
import time

import pytest

from photostyle.errors import ErrorKind, JobAlreadyActive
from photostyle.events import JobCompleted
from photostyle.schemas import PendingJob, Project
from photostyle.state_machine import Phase, ProcessingStateMachine

from conftest import enveloped_body

@pytest.fixture
def machine(runner, events, journal):
    m = ProcessingStateMachine(runner, events, journal=journal, progress_interval=0.01)
    yield m
    m.reset()

def _phases(machine):
    seen = []
    machine.add_listener(lambda s: seen.append(s.phase))
    return seen

def test_happy_path_transitions(machine, runner, transport, store, red_jpeg):
    transport.queue(200, enveloped_body(red_jpeg))
    seen = _phases(machine)

    job_id = machine.start("anime-style", "Anime Style", red_jpeg)
    runner.drain(timeout=10)

    assert job_id == machine.current_job_id
    assert seen == [Phase.PREPARING, Phase.UPLOADING, Phase.PROCESSING, Phase.COMPLETED]
    assert machine.state.project.template_id == "anime-style"
    assert machine.progress == 1.0
    assert store.get_image(machine.state.project.id) is not None

def test_failure_path(machine, runner, transport, red_jpeg):
    transport.queue(500, {"error": "model unavailable"})
    machine.start("anime-style", "Anime Style", red_jpeg)
    runner.drain(timeout=10)

    assert machine.state.phase == Phase.FAILED
    assert machine.state.error_kind == ErrorKind.INVALID_RESPONSE
    assert machine.state.is_terminal

def test_bad_source_image_fails_during_preparing(machine, transport):
    seen = _phases(machine)
    assert machine.start("anime-style", "Anime Style", b"nope") is None
    assert seen == [Phase.PREPARING, Phase.FAILED]
    assert machine.state.error_kind == ErrorKind.IMAGE_SAVE_FAILED
    assert transport.requests == []

def test_second_start_while_active_is_rejected(machine, runner, transport, red_jpeg):
    gate = threading.Event()
    original = transport.send

    def slow_send(*args, **kwargs):
        gate.wait(5)
        return original(*args, **kwargs)

    transport.send = slow_send
    transport.queue(200, enveloped_body(red_jpeg))

    machine.start("anime-style", "Anime Style", red_jpeg)
    with pytest.raises(JobAlreadyActive):
        machine.start("watercolor", "Watercolor", red_jpeg)

    gate.set()
    runner.drain(timeout=10)
    assert machine.state.phase == Phase.COMPLETED

    # a new job may start once the previous one is terminal
    transport.queue(200, enveloped_body(red_jpeg, template_id="watercolor"))
    machine.start("watercolor", "Watercolor", red_jpeg)
    runner.drain(timeout=10)
    assert machine.state.project.template_id == "watercolor"

def test_progress_is_bounded_and_stops(machine, runner, transport, red_jpeg):
    gate = threading.Event()
    original = transport.send

    def slow_send(*args, **kwargs):
        gate.wait(5)
        return original(*args, **kwargs)

    transport.send = slow_send
    transport.queue(500, "boom")
    machine.start("anime-style", "Anime Style", red_jpeg)

    deadline = time.monotonic() + 5
    while machine.progress < 0.9 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert machine.progress == pytest.approx(0.9)
    assert machine.state.phase == Phase.PROCESSING

    gate.set()
    runner.drain(timeout=10)
    assert machine.state.phase == Phase.FAILED
    frozen = machine.progress
    time.sleep(0.05)
    assert machine.progress == frozen

def test_events_for_other_jobs_are_ignored(machine, events, runner, transport, red_jpeg):
    gate = threading.Event()
    original = transport.send
    transport.send = lambda *a, **k: (gate.wait(5), original(*a, **k))[1]
    transport.queue(200, enveloped_body(red_jpeg))

    machine.start("anime-style", "Anime Style", red_jpeg)
    stray = Project(template_id="x", template_name="X")
    events.publish(JobCompleted("someone-else", stray))
    assert machine.state.phase == Phase.PROCESSING

    gate.set()
    runner.drain(timeout=10)
    assert machine.state.phase == Phase.COMPLETED

def test_reset_discards_interest(machine, runner, transport, red_jpeg, store):
    gate = threading.Event()
    original = transport.send
    transport.send = lambda *a, **k: (gate.wait(5), original(*a, **k))[1]
    transport.queue(200, enveloped_body(red_jpeg))

    machine.start("anime-style", "Anime Style", red_jpeg)
    machine.reset()
    assert machine.state.phase == Phase.IDLE

    gate.set()
    runner.drain(timeout=10)
    # remote work still lands in the library, the machine stays idle
    assert machine.state.phase == Phase.IDLE
    assert len(store.get_all()) == 1

def test_cold_start_with_outstanding_job(machine, journal, events):
    journal.record(PendingJob(id="job-old", template_id="anime-style", template_name="Anime Style",
                              original_asset_path="/scratch/job-old-original.jpg"))

    assert machine.resume_background() == "job-old"
    assert machine.state.phase == Phase.PROCESSING_IN_BACKGROUND

    project = Project(template_id="anime-style", template_name="Anime Style")
    events.publish(JobCompleted("job-old", project))
    assert machine.state.phase == Phase.COMPLETED
    assert machine.state.project == project

def test_cold_start_without_outstanding_job(machine):
    assert machine.resume_background() is None
    assert machine.state.phase == Phase.IDLE

import threading

import numpy as np
import pytest

from docscan.config import ScannerSettings
from docscan.decision import CaptureDecision
from docscan.mrz_gate import MrzGate
from docscan.quad import Quad, Rect
from docscan.session import FrameOutcome, ScanMode, ScanObserver, ScanSession
from docscan import stabilizer
from docscan.stabilizer import TrackingStatus, TrackingUpdate

from conftest import FakeOcrEngine

GUIDE = Rect(100, 80, 440, 320)


class RecordingObserver(ScanObserver):
    def __init__(self):
        self.detected = []
        self.missed = 0
        self.instructions = []
        self.captures = []
        self.delivered = threading.Event()

    def on_detected(self, quad):
        self.detected.append(quad)
        self.delivered.set()

    def on_missed(self):
        self.missed += 1
        self.delivered.set()

    def on_instruction(self, text):
        self.instructions.append(text)

    def on_capture_ready(self, jpeg_bytes):
        self.captures.append(jpeg_bytes)


@pytest.fixture
def observer():
    return RecordingObserver()


def _blocking_analyze(release, started):
    def analyze(frame, guide_rect):
        started.set()
        release.wait(5)
        quad = Quad([[10, 10], [100, 10], [100, 80], [10, 80]], (640, 480))
        return FrameOutcome(tracking=TrackingUpdate(TrackingStatus.ACCEPTED, quad))
    return analyze


def test_preview_tracks_document(document_frame, observer):
    with ScanSession(ScanMode.PREVIEW, observer=observer) as session:
        outcome = session.process_frame(document_frame)
        assert outcome.tracking.status == TrackingStatus.ACCEPTED
        assert len(observer.detected) == 1
        assert session.buffers.live == 0
    assert session.released


def test_preview_holds_then_misses(document_frame, blank_frame, observer):
    with ScanSession(ScanMode.PREVIEW, observer=observer) as session:
        session.process_frame(document_frame)
        held = session.process_frame(blank_frame)
        assert held.tracking.status == TrackingStatus.HELD
        session.state.last_accepted_at_ms -= 1000
        lost = session.process_frame(blank_frame)
        assert lost.tracking.status == TrackingStatus.LOST
        assert observer.missed == 1


def test_submit_requires_started_session(document_frame):
    session = ScanSession()
    try:
        assert not session.submit_frame(document_frame)
    finally:
        session.release_resources()


def test_frames_dropped_while_busy(document_frame, observer):
    release, started = threading.Event(), threading.Event()
    session = ScanSession(observer=observer)
    session._analyze = _blocking_analyze(release, started)
    session.start_session()
    try:
        assert session.submit_frame(document_frame)
        assert started.wait(5)
        assert session.busy
        assert not session.submit_frame(document_frame)
        release.set()
        assert observer.delivered.wait(5)
        assert len(observer.detected) == 1
    finally:
        release.set()
        session.release_resources()


def test_results_of_stopped_session_are_discarded(document_frame, observer):
    release, started = threading.Event(), threading.Event()
    session = ScanSession(observer=observer)
    session._analyze = _blocking_analyze(release, started)
    session.start_session()
    assert session.submit_frame(document_frame)
    assert started.wait(5)
    session.stop_session()
    release.set()
    session.release_resources()
    assert observer.detected == []
    assert not session.active


def test_results_go_through_dispatch(document_frame, observer):
    posted = []
    done = threading.Event()

    def dispatch(fn):
        posted.append(fn)
        done.set()

    session = ScanSession(observer=observer, dispatch=dispatch)
    session.start_session()
    try:
        assert session.submit_frame(document_frame)
        assert done.wait(5)
        assert observer.detected == []
        posted[0]()
        assert len(observer.detected) == 1
    finally:
        session.release_resources()


def test_worker_failure_counts_as_miss(document_frame, observer):
    session = ScanSession(observer=observer)

    def broken(frame, guide_rect):
        raise RuntimeError("boom")

    session._analyze = broken
    session.start_session()
    try:
        assert session.submit_frame(document_frame)
        assert observer.delivered.wait(5)
        assert observer.missed == 1
    finally:
        session.release_resources()


def test_geometric_auto_capture(document_frame, observer):
    with ScanSession(ScanMode.AUTO_GEOMETRIC, observer=observer) as session:
        first = session.process_frame(document_frame, GUIDE)
        second = session.process_frame(document_frame, GUIDE)
        assert first.decision == CaptureDecision.HOLDING
        assert second.decision == CaptureDecision.CAPTURE
        assert observer.instructions[-1] == "Capturing..."
        assert len(observer.captures) == 1
        assert observer.captures[0][:2] == b"\xff\xd8"
        assert not session.engine.in_flight
        assert session.state.good_frame_streak == 0
        assert not session.state.locked


def test_geometric_outside_guide(document_frame, observer):
    with ScanSession(ScanMode.AUTO_GEOMETRIC, observer=observer) as session:
        outcome = session.process_frame(document_frame, Rect(0, 0, 120, 90))
        assert outcome.decision == CaptureDecision.DETECTED
        assert outcome.instruction == "Place your passport inside the guide"


def test_mrz_auto_capture(observer, mrz_text):
    frame = np.full((480, 640, 3), 230, dtype=np.uint8)
    engine = FakeOcrEngine(text=mrz_text)
    gate = MrzGate(required_stable_frames=2, engine=engine)
    settings = ScannerSettings(mrz_required_stable_frames=2)
    with ScanSession(ScanMode.AUTO_MRZ, settings=settings, observer=observer, mrz_gate=gate) as session:
        first = session.process_frame(frame, GUIDE)
        second = session.process_frame(frame, GUIDE)
        assert first.decision == CaptureDecision.HOLDING
        assert second.decision == CaptureDecision.CAPTURE
        assert len(observer.captures) == 1
        assert gate.state.stable_frame_count == 0
    assert engine.release_count == 1


def test_pause_resets_ocr_but_keeps_engine(observer, mrz_text):
    frame = np.full((480, 640, 3), 230, dtype=np.uint8)
    engine = FakeOcrEngine(text=mrz_text)
    gate = MrzGate(required_stable_frames=3, engine=engine)
    session = ScanSession(ScanMode.AUTO_MRZ, observer=observer, mrz_gate=gate)
    session.start_session()
    session.process_frame(frame, GUIDE)
    session.stop_session(ending=False)
    assert gate.state.stable_frame_count == 0
    assert engine.release_count == 0
    session.release_resources()
    session.release_resources()
    assert engine.release_count == 1


def test_released_session_cannot_restart():
    session = ScanSession()
    session.release_resources()
    with pytest.raises(RuntimeError):
        session.start_session()


def test_held_quad_does_not_count_as_good_frame(document_frame, blank_frame, observer, monkeypatch):
    clock = iter([0.0, 100.0, 200.0])
    monkeypatch.setattr(stabilizer, "_now_ms", lambda: next(clock))
    with ScanSession(ScanMode.AUTO_GEOMETRIC, observer=observer) as session:
        first = session.process_frame(document_frame, GUIDE)
        second = session.process_frame(blank_frame, GUIDE)
        assert first.decision == CaptureDecision.HOLDING
        assert second.tracking.status == TrackingStatus.HELD
        assert second.decision == CaptureDecision.NO_DOCUMENT
        assert second.capture is None
        assert session.state.good_frame_streak == 0
        third = session.process_frame(document_frame, GUIDE)
        assert third.decision == CaptureDecision.HOLDING
        assert observer.captures == []


def test_concurrent_frames_are_dropped(document_frame, observer):
    release, started = threading.Event(), threading.Event()
    session = ScanSession(observer=observer)
    session._analyze = _blocking_analyze(release, started)
    session.start_session()
    results = []
    worker = threading.Thread(target=lambda: results.append(session.process_frame(document_frame)))
    try:
        worker.start()
        assert started.wait(5)
        dropped = session.process_frame(document_frame)
        assert dropped.dropped
        assert dropped.to_dict()["dropped"] is True
        assert not session.submit_frame(document_frame)
        release.set()
        worker.join(5)
        assert len(results) == 1
        assert not results[0].dropped
        assert len(observer.detected) == 1
        assert not session.busy
        assert not session.process_frame(document_frame).dropped
    finally:
        release.set()
        session.release_resources()

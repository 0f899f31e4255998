"""
Test helpers: image builders and stand-ins for the collaborators and stores.
"""
import threading
import time

from ridgelab.errors import NotificationFailed, OracleUnavailable
from ridgelab.schemas import OracleReport
from ridgelab.services.runs import RunStore
from ridgelab.services.storage import LocalBlobStore
from ridgelab.services.texture import RgbaImage


def build_image(width, height, reds, alpha=255):
    """Grayscale RGBA image from a flat list of intensities."""
    data = bytearray()
    for value in reds:
        data.extend((value, value, value, alpha))
    return RgbaImage(width, height, bytes(data))


class FakeOracle:
    def __init__(self, report=None, error=None, delay=0.0, gate=None):
        self.report = report or OracleReport(
            assessment="Ridges are crisp and valleys are clean.",
            recommendations=["Archive with case file"],
            notes="No artefacts observed.",
            confidence=0.9,
        )
        self.error = error
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.calls = []

    def assess(self, original_ref, processed_ref, elapsed_ms):
        self.calls.append((original_ref, processed_ref, elapsed_ms))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.report


class BrokenOracle(FakeOracle):
    def __init__(self):
        super().__init__(error=OracleUnavailable("Oracle request failed: 502"))


class FakeNotifier:
    def __init__(self, delivered=True, error=None):
        self.delivered = delivered
        self.error = error
        self.messages = []

    def notify(self, title, content):
        self.messages.append((title, content))
        if self.error is not None:
            raise self.error
        return self.delivered


class BrokenNotifier(FakeNotifier):
    def __init__(self):
        super().__init__(error=NotificationFailed("Notification request failed: connection refused"))


class GatedBlobStore(LocalBlobStore):
    """Blob store whose read or put blocks until the test opens the gate."""

    def __init__(self, root, gated_operation):
        super().__init__(root)
        self.gated_operation = gated_operation
        self.started = threading.Event()
        self.gate = threading.Event()

    def _hold(self, operation):
        if operation == self.gated_operation:
            self.started.set()
            self.gate.wait(timeout=5)

    def read(self, key):
        self._hold("read")
        return super().read(key)

    def put(self, key, data, content_type="application/octet-stream"):
        self._hold("put")
        return super().put(key, data, content_type)


class ThreadRecordingStore(RunStore):
    """Run store that remembers which thread each write ran on."""

    def __init__(self, engine):
        super().__init__(engine)
        self.write_threads = []

    def _record_thread(self):
        self.write_threads.append(threading.current_thread())

    def create(self, run):
        self._record_thread()
        return super().create(run)

    def mark_completed(self, run_id, **changes):
        self._record_thread()
        return super().mark_completed(run_id, **changes)

    def record_notification(self, **entry):
        self._record_thread()
        return super().record_notification(**entry)

import io
import os
import threading
import time

import pytest

from tubeline.catalog import renditions_from_formats
from tubeline.errors import SourceStreamError
from tubeline.models import ContentMetadata, ResolvedContent

PAGE_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

# Mirrors the shape of yt-dlp's ``formats`` list.
SAMPLE_FORMATS = [
    {"format_id": "sb0", "ext": "mhtml", "vcodec": "none", "acodec": "none"},
    {"format_id": "22", "ext": "mp4", "height": 720, "vcodec": "avc1.64001F", "acodec": "mp4a.40.2", "tbr": 1500, "filesize": 30_000_000},
    {"format_id": "137", "ext": "mp4", "height": 1080, "vcodec": "avc1.640028", "acodec": "none", "tbr": 4000, "filesize": 90_000_000},
    {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2", "abr": 192, "filesize": 5_000_000},
]


def sample_content(formats=None, title="Never Gonna Give You Up", duration=212):
    metadata = ContentMetadata(
        id="dQw4w9WgXcQ",
        title=title,
        author="Rick Astley",
        duration_seconds=duration,
        view_count=1_000_000,
        thumbnail="https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
        webpage_url=PAGE_URL,
    )
    return ResolvedContent(metadata=metadata, renditions=renditions_from_formats(formats or SAMPLE_FORMATS, PAGE_URL))


class FakeStream:
    def __init__(self, handle, data=b"", fail=False):
        self.handle = handle
        self.stdout = io.BytesIO(data)
        self.fail = fail
        self.closed = False

    def check(self, timeout=5):
        if self.fail:
            raise SourceStreamError(f"Source stream {self.handle.format_id} failed: connection reset")

    def close(self):
        self.closed = True


class FakeResolver:
    def __init__(self, content=None, error=None, delay=0.0, stream_data=None, failing_formats=()):
        self.content = content if content is not None else sample_content()
        self.error = error
        self.delay = delay
        self.stream_data = stream_data or {}
        self.failing_formats = set(failing_formats)
        self.resolved = []
        self.opened = []

    def resolve(self, locator):
        self.resolved.append(locator)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.content

    def open_stream(self, handle):
        stream = FakeStream(
            handle,
            self.stream_data.get(handle.format_id, b"source-" + handle.format_id.encode()),
            fail=handle.format_id in self.failing_formats,
        )
        self.opened.append(stream)
        return stream

    def version(self):
        return "2024.01.01"

    def cli_available(self):
        return True


class FakeSession:
    def __init__(self, stdout, returncode=0, detail="", on_terminate=None):
        self.stdout = stdout
        self.returncode = returncode
        self.detail = detail
        self.terminated = False
        self._on_terminate = on_terminate

    def wait(self, timeout=None):
        return self.returncode

    def error_detail(self):
        return self.detail or f"ffmpeg exited with code {self.returncode}"

    def terminate(self):
        self.terminated = True
        if self._on_terminate:
            self._on_terminate()


class FakeTranscoder:
    """Emits ``output`` once started and reports progress like ffmpeg would."""

    def __init__(self, output=b"x" * 1024, returncode=0, detail=""):
        self.output = output
        self.returncode = returncode
        self.detail = detail
        self.requests = []
        self.audio_payloads = []
        self.sessions = []

    def start(self, request):
        self.requests.append(request)
        if request.audio_path:
            with open(request.audio_path, "rb") as handle:
                self.audio_payloads.append(handle.read())
        if request.on_progress:
            request.on_progress(50.0)
            request.on_progress(100.0)
        session = FakeSession(io.BytesIO(self.output), self.returncode, self.detail)
        self.sessions.append(session)
        return session

    def version(self):
        return "ffmpeg version 6.1 test"


class SilentTranscoder(FakeTranscoder):
    """Starts but never writes; stdout is a pipe nobody feeds."""

    def start(self, request):
        self.requests.append(request)
        read_fd, write_fd = os.pipe()
        closed = threading.Event()

        def close_writer():
            if not closed.is_set():
                closed.set()
                os.close(write_fd)

        session = FakeSession(os.fdopen(read_fd, "rb", buffering=0), on_terminate=close_writer)
        self.sessions.append(session)
        return session


@pytest.fixture
def scratch_root(tmp_path):
    return str(tmp_path / "scratch")


def scratch_entries(root):
    if not os.path.isdir(root):
        return []
    return os.listdir(root)

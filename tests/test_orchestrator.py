import threading

import pytest

from builders import FakeSession, PayloadBuilder, build_zip
from remote_payload_extractor.config import ExtractorConfig
from remote_payload_extractor.errors import BusyError, ErrorKind
from remote_payload_extractor.fetcher import BufferSource, RangeFetcher, RemoteSource
from remote_payload_extractor.operations import Operation, OperationKind
from remote_payload_extractor.orchestrator import (
    DirectorySink,
    Error,
    ExtractionOrchestrator,
    ExtractionRequest,
    ExtractionSession,
    MemorySink,
    Progress,
    SourceKind,
    Success,
)


def extract(data, names, **kwargs):
    return list(ExtractionOrchestrator(**kwargs).extract(BufferSource(data), names))


@pytest.fixture
def delta_payload():
    builder = PayloadBuilder()
    builder.add_image("boot", b"BOOT" * 4)
    head = builder.add_data(b"ABCD")
    tail = builder.add_data(b"WXYZ")
    builder.add_operations("vendor", 12, [
        Operation(OperationKind.REPLACE, head, 4),
        Operation(OperationKind.ZERO, 0, 4),
        Operation(OperationKind.REPLACE, tail, 4),
    ])
    builder.add_operations("system", 8, [
        Operation(OperationKind.REPLACE, head, 4),
        Operation(OperationKind.BSDIFF, tail, 4),
    ])
    return builder.build()


class TestExtractionOrchestrator:

    def test_missing_partition_is_skipped(self, simple_payload, boot_image):
        data = PayloadBuilder().add_image("boot", boot_image).build()
        events = extract(data, ["boot", "doesnotexist"])
        assert events == [Progress("boot", boot_image), Success()]

    def test_events_follow_request_order(self, simple_payload, boot_image):
        events = extract(simple_payload, ["system", "boot"])
        assert [e.partition_name for e in events[:-1]] == ["system", "boot"]
        assert events[0].object_handle == b"SYSTEM" * 50
        assert events[1].object_handle == boot_image
        assert events[-1] == Success()

    def test_empty_request(self, simple_payload):
        assert extract(simple_payload, []) == [Success()]

    def test_operation_list_is_replayed(self, delta_payload):
        events = extract(delta_payload, ["vendor", "boot"])
        assert events == [
            Progress("vendor", b"ABCD\x00\x00\x00\x00WXYZ"),
            Progress("boot", b"BOOT" * 4),
            Success(),
        ]

    def test_unsupported_operation_stops_the_batch(self, delta_payload):
        events = extract(delta_payload, ["boot", "system", "vendor"])
        assert events[0] == Progress("boot", b"BOOT" * 4)
        assert len(events) == 2
        assert isinstance(events[1], Error)
        assert events[1].kind is ErrorKind.UNSUPPORTED_OPERATION
        assert "system" in events[1].message

    def test_format_error_is_single_terminal_event(self):
        events = extract(b"\x00" * 64, ["boot"])
        assert len(events) == 1
        assert events[0].kind is ErrorKind.UNKNOWN_FORMAT

    def test_header_error_before_any_partition(self):
        builder = PayloadBuilder().add_raw_entry(b"", 4, 0)
        events = extract(builder.build(), ["boot"])
        assert len(events) == 1
        assert events[0].kind is ErrorKind.NAME_LENGTH_OUT_OF_RANGE

    def test_zip_source(self, simple_payload, boot_image):
        data, _ = build_zip([("metadata", b"m"), ("payload.bin", simple_payload)], zip64=True)
        assert extract(data, ["boot"]) == [Progress("boot", boot_image), Success()]

    def test_zip_delta_source(self, delta_payload):
        data, _ = build_zip([("payload.bin", delta_payload)])
        events = extract(data, ["vendor"])
        assert events[0] == Progress("vendor", b"ABCD\x00\x00\x00\x00WXYZ")

    def test_remote_zip_source(self, simple_payload, boot_image, small_config, fast_policy):
        data, _ = build_zip([("payload.bin", simple_payload)])
        session = FakeSession(data, failures=1)
        fetcher = RangeFetcher(small_config, fast_policy)
        orchestrator = ExtractionOrchestrator(small_config, fetcher)
        source = RemoteSource("https://example.com/ota.zip", session=session)
        events = list(orchestrator.extract(source, ["boot"]))
        assert events == [Progress("boot", boot_image), Success()]

    def test_download_failure(self, simple_payload, small_config, fast_policy):
        session = FakeSession(simple_payload, failures=100)
        fetcher = RangeFetcher(small_config, fast_policy)
        source = RemoteSource("https://example.com/payload.bin", session=session)
        events = list(ExtractionOrchestrator(small_config, fetcher).extract(source, ["boot"]))
        assert len(events) == 1
        assert events[0].kind is ErrorKind.DOWNLOAD_FAILED

    def test_directory_sink(self, simple_payload, boot_image, tmp_path):
        events = extract(simple_payload, ["boot"], sink=DirectorySink(tmp_path / "out"))
        path = events[0].object_handle
        assert path == tmp_path / "out" / "boot.img"
        assert path.read_bytes() == boot_image

    @pytest.mark.parametrize("zipped", [False, True])
    def test_short_responses_end_with_error_event(self, simple_payload, small_config, fast_policy, zipped):
        data = build_zip([("payload.bin", simple_payload)])[0] if zipped else simple_payload
        fetcher = RangeFetcher(small_config, fast_policy)
        source = RemoteSource("https://example.com/ota.zip", session=FakeSession(data, truncate=1))
        events = list(ExtractionOrchestrator(small_config, fetcher).extract(source, ["boot"]))
        assert len(events) == 1
        assert isinstance(events[0], Error)
        assert events[0].kind is ErrorKind.BUFFER_OVERRUN

    def test_zero_fill_beyond_partition_size(self):
        builder = PayloadBuilder().add_image("boot", b"BOOT" * 4)
        builder.add_operations("vendor", 16, [Operation(OperationKind.ZERO, 0, 1 << 62)])
        events = extract(builder.build(), ["boot", "vendor"])
        assert events[0] == Progress("boot", b"BOOT" * 4)
        assert len(events) == 2
        assert events[1].kind is ErrorKind.BUFFER_OVERRUN
        assert "vendor" in events[1].message


class TestExtractionRequest:

    @pytest.mark.parametrize("ref,kind", [
        ("https://example.com/ota.zip", SourceKind.URL),
        ("http://10.0.0.2/payload.bin", SourceKind.URL),
        ("/tmp/payload.bin", SourceKind.FILE),
    ])
    def test_from_ref(self, ref, kind):
        request = ExtractionRequest.from_ref(ref, ["boot"])
        assert request.source_kind is kind
        assert request.partition_names == ("boot",)


class BlockingSink(MemorySink):
    """在释放前阻塞后台线程"""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def store(self, name, data):
        self.entered.set()
        self.release.wait(timeout=5)
        return data


class TestExtractionSession:

    def test_local_file_session(self, simple_payload, boot_image, tmp_path):
        path = tmp_path / "payload.bin"
        path.write_bytes(simple_payload)
        events = ExtractionSession().run(ExtractionRequest.from_ref(path, ["boot", "nope", "system"]))
        assert events == [
            Progress("boot", boot_image),
            Progress("system", b"SYSTEM" * 50),
            Success(),
        ]

    def test_url_session(self, simple_payload, boot_image):
        session = ExtractionSession(ExtractorConfig(chunk_size=100), session=FakeSession(simple_payload))
        events = session.run(ExtractionRequest(SourceKind.URL, "https://example.com/payload.bin", ("boot",)))
        assert events == [Progress("boot", boot_image), Success()]

    def test_missing_file(self, tmp_path):
        events = ExtractionSession().run(ExtractionRequest.from_ref(tmp_path / "missing.zip", ["boot"]))
        assert len(events) == 1
        assert isinstance(events[0], Error)

    def test_second_start_while_running_is_busy(self, simple_payload, tmp_path):
        path = tmp_path / "payload.bin"
        path.write_bytes(simple_payload)
        request = ExtractionRequest.from_ref(path, ["boot"])
        sink = BlockingSink()
        session = ExtractionSession(sink=sink)

        events = session.start(request)
        assert sink.entered.wait(timeout=5)
        assert session.busy
        with pytest.raises(BusyError):
            session.start(request)

        sink.release.set()
        assert [type(e) for e in events] == [Progress, Success]
        assert not session.busy
        assert session.run(request)[-1] == Success()

    def test_consumer_may_stop_listening(self, simple_payload, tmp_path):
        path = tmp_path / "payload.bin"
        path.write_bytes(simple_payload)
        session = ExtractionSession()
        events = session.start(ExtractionRequest.from_ref(path, ["boot", "system"]))
        first = next(events)
        assert first.partition_name == "boot"
        events.close()

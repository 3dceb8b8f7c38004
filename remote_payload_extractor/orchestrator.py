# 远程负载提取工具 - 提取流程编排与后台会话

import enum
import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .config import ExtractorConfig
from .container import ContainerLocator
from .errors import BusyError, ErrorKind, PartitionNotFoundError, PayloadError
from .fetcher import LocalFileSource, RangeFetcher, RemoteSource
from .manifest import HeaderManifestParser
from .operations import OperationExecutor, PayloadAccessor

logger = logging.getLogger(__name__)


class SourceKind(enum.Enum):
    FILE = "file"
    URL = "url"


@dataclass(frozen=True)
class ExtractionRequest:
    source_kind: SourceKind
    source_ref: str
    partition_names: tuple = ()

    @classmethod
    def from_ref(cls, source_ref, partition_names=()):
        """根据地址形式判断是URL还是本地文件"""
        ref = str(source_ref)
        kind = SourceKind.URL if ref.startswith(("http://", "https://")) else SourceKind.FILE
        return cls(kind, ref, tuple(partition_names))


# ========== 会话事件 ==========
@dataclass(frozen=True)
class Progress:
    partition_name: str
    object_handle: Any
    terminal = False


@dataclass(frozen=True)
class Success:
    terminal = True


@dataclass(frozen=True)
class Error:
    message: str
    kind: Optional[ErrorKind] = None
    terminal = True


# ========== 输出 ==========
class MemorySink:
    """保留在内存中，句柄即分区数据本身"""

    def store(self, name, data):
        return data


class DirectorySink:
    """写入 <目录>/<分区名>.img，句柄为文件路径"""

    def __init__(self, output_dir):
        self.output_dir = Path(output_dir)

    def store(self, name, data):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        safe_name = name.replace("/", "_").replace("\\", "_")
        path = self.output_dir / f"{safe_name}.img"
        with open(path, "wb") as f:
            f.write(data)
        logger.info("文件已保存至: %s", path)
        return path


def open_source(request, config=None, session=None):
    if request.source_kind is SourceKind.URL:
        return RemoteSource(request.source_ref, session=session, config=config)
    return LocalFileSource(request.source_ref)


class ExtractionOrchestrator:
    """按请求顺序逐个提取分区并产生事件"""

    def __init__(self, config=None, fetcher=None, sink=None, executor=None):
        self.config = config or ExtractorConfig()
        self.fetcher = fetcher or RangeFetcher(self.config)
        self.locator = ContainerLocator(self.fetcher, self.config)
        self.parser = HeaderManifestParser(self.fetcher, self.config)
        self.executor = executor or OperationExecutor()
        self.sink = sink or MemorySink()

    def prepare(self, source):
        """解析容器位置与清单，返回 (location, header, manifest)"""
        location = self.locator.locate(source)
        header, manifest = self.parser.parse_header(
            source, location.payload_body_offset, location.format_kind
        )
        return location, header, manifest

    def partition_bytes(self, accessor, manifest, entry):
        operations = manifest.operations_for(entry.name)
        if operations is None:
            return self.fetcher.fetch(accessor.source, entry.source_offset, entry.end - 1)
        return self.executor.execute(accessor, operations, entry.name, entry.size)

    def extract(self, source, partition_names):
        try:
            location, _, manifest = self.prepare(source)
            body_length = location.payload_length
            if body_length is None:
                body_length = self.fetcher.length(source) - location.payload_body_offset
            accessor = PayloadAccessor(self.fetcher, source, location.payload_body_offset, body_length)

            for name in partition_names:
                try:
                    entry = manifest.require(name)
                except PartitionNotFoundError as e:
                    logger.warning("跳过: %s", e)
                    continue
                logger.info("开始提取 %s", name)
                data = self.partition_bytes(accessor, manifest, entry)
                yield Progress(name, self.sink.store(name, data))
        except PayloadError as e:
            logger.error("提取失败: %s", e)
            yield Error(str(e), e.kind)
            return
        except OSError as e:
            logger.error("提取失败: %s", e)
            yield Error(str(e))
            return
        yield Success()


class ExtractionSession:
    """一次提取会话：在后台线程中运行，通过队列按顺序返回事件

    同一会话对象同时只允许一个提取任务，重复启动抛出 BusyError。
    没有取消机制，调用方可以随时停止读取事件。
    """

    def __init__(self, config=None, sink=None, session=None, fetcher=None):
        self.config = config or ExtractorConfig()
        self.sink = sink
        self.http_session = session
        self.fetcher = fetcher
        self._lock = threading.Lock()
        self._active = False

    @property
    def busy(self):
        with self._lock:
            return self._active

    def start(self, request):
        with self._lock:
            if self._active:
                raise BusyError("已有提取任务正在进行")
            self._active = True
        events = queue.Queue()
        worker = threading.Thread(
            target=self._run, args=(request, events), name="payload-extractor", daemon=True
        )
        worker.start()
        return self._drain(events)

    def run(self, request):
        return list(self.start(request))

    @staticmethod
    def _drain(events):
        while True:
            event = events.get()
            yield event
            if event.terminal:
                break

    def _run(self, request, events):
        terminal = None
        try:
            orchestrator = ExtractionOrchestrator(self.config, self.fetcher, self.sink)
            source = open_source(request, self.config, self.http_session)
            for event in orchestrator.extract(source, request.partition_names):
                if event.terminal:
                    terminal = event
                    break
                events.put(event)
        except OSError as e:
            terminal = Error(f"无法打开 {request.source_ref}: {e}")
        except Exception as e:
            logger.exception("后台任务异常")
            terminal = Error(str(e))
        finally:
            with self._lock:
                self._active = False
            events.put(terminal or Error("提取任务意外结束"))

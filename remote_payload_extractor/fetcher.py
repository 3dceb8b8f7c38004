# 远程负载提取工具 - 字节范围下载

import logging
import re
import time
from dataclasses import dataclass

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import ExtractorConfig
from .errors import BufferOverrunError, DownloadFailedError, report_size_mismatch

logger = logging.getLogger(__name__)

CONTENT_RANGE_RE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
RETRYABLE_ERRORS = (requests.exceptions.RequestException, OSError)


@dataclass(frozen=True)
class DownloadRange:
    """闭区间 [start, end]"""
    start: int
    end: int

    @property
    def length(self):
        return self.end - self.start + 1

    @classmethod
    def checked(cls, start, end, total):
        if start < 0 or end < start or end >= total:
            raise BufferOverrunError(f"下载范围 {start}-{end} 超出资源长度 {total}")
        return cls(start, end)

    def split(self, chunk_size):
        """按块大小拆分，子区间首尾相接、互不重叠"""
        pieces = []
        pos = self.start
        while pos <= self.end:
            stop = min(pos + chunk_size - 1, self.end)
            pieces.append(DownloadRange(pos, stop))
            pos = stop + 1
        return pieces

    def header(self):
        return f"bytes={self.start}-{self.end}"


class RetryPolicy:
    """统一的重试策略：固定次数 + 线性退避"""

    def __init__(self, max_attempts=3, backoff=0.5, sleep=time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts 至少为1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, sleep=time.sleep):
        return cls(config.max_retries, config.retry_backoff, sleep)

    def delay(self, attempt):
        return self.backoff * attempt

    def call(self, func, description):
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.debug("%s 第 %d/%d 次尝试失败: %s", description, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    self.sleep(self.delay(attempt))
        raise DownloadFailedError(
            f"{description} 在 {self.max_attempts} 次尝试后仍失败: {last_error}", cause=last_error
        )


def create_session(config=None):
    """创建带连接池的会话；重试统一由 RetryPolicy 负责"""
    config = config or ExtractorConfig()
    session = requests.Session()
    session.headers["User-Agent"] = config.user_agent
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_maxsize=config.pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# ========== 数据源 ==========
class BufferSource:
    """已在内存中的数据，直接切片"""
    is_remote = False

    def __init__(self, data, name="<memory>"):
        self._data = bytes(data)
        self.name = name

    @property
    def length(self):
        return len(self._data)

    def read(self, start, end):
        return self._data[start:end + 1]


class LocalFileSource(BufferSource):
    """本地文件：一次性读入内存"""

    def __init__(self, path):
        with open(path, "rb") as f:
            data = f.read()
        super().__init__(data, name=str(path))


class RemoteSource:
    """通过 HTTP Range 请求访问的远程文件"""
    is_remote = True

    def __init__(self, url, session=None, config=None):
        config = config or ExtractorConfig()
        self.url = url
        self.name = url
        self.session = session or create_session(config)
        self.timeout = config.timeout
        self.length = None
        # 服务器忽略 Range 时缓存的完整内容
        self.body = None

    def keep_body(self, content):
        logger.warning("服务器不支持Range请求，已缓存完整内容 (%d 字节)", len(content))
        self.body = content
        if self.length is None:
            self.length = len(content)

    def probe_length(self):
        response = self.session.head(self.url, allow_redirects=True, timeout=self.timeout)
        if response.status_code < 400 and response.headers.get("Content-Length", "").isdigit():
            self.length = int(response.headers["Content-Length"])
            return self.length

        # HEAD 不可用时用 bytes=0-0 探测总长度
        response = self.session.get(self.url, headers={"Range": "bytes=0-0"}, timeout=self.timeout)
        if response.status_code == 206:
            match = CONTENT_RANGE_RE.match(response.headers.get("Content-Range", ""))
            if match and match.group(3) != "*":
                self.length = int(match.group(3))
                return self.length
        elif response.status_code == 200:
            self.keep_body(response.content)
            return self.length
        raise requests.HTTPError(f"无法获取文件大小 (HTTP {response.status_code})", response=response)

    def read(self, start, end):
        if self.body is not None:
            return self.body[start:end + 1]
        rng = DownloadRange(start, end)
        response = self.session.get(self.url, headers={"Range": rng.header()}, timeout=self.timeout)
        if response.status_code == 206:
            return response.content
        if response.status_code == 200:
            self.keep_body(response.content)
            return self.body[start:end + 1]
        raise requests.HTTPError(f"范围请求失败 (HTTP {response.status_code})", response=response)


class RangeFetcher:
    """分块、带重试的范围读取"""

    def __init__(self, config=None, policy=None):
        self.config = config or ExtractorConfig()
        self.policy = policy or RetryPolicy.from_config(self.config)
        self.chunk_size = self.config.chunk_size

    def length(self, source):
        if source.length is None:
            self.policy.call(source.probe_length, f"获取 {source.name} 的大小")
            logger.debug("资源长度: %d", source.length)
        return source.length

    def fetch(self, source, start, end):
        rng = DownloadRange.checked(start, end, self.length(source))
        if not source.is_remote:
            return source.read(rng.start, rng.end)

        chunks = []
        for piece in rng.split(self.chunk_size):
            logger.debug("请求 %s: %s", source.name, piece.header())
            data = self.policy.call(
                lambda piece=piece: source.read(piece.start, piece.end),
                f"下载 {piece.header()}",
            )
            if len(data) != piece.length:
                report_size_mismatch(logger, f"范围 {piece.header()}", piece.length, len(data))
            chunks.append(data)
        return b"".join(chunks)

    def fetch_tail(self, source, size):
        """读取资源末尾最多 size 字节，返回 (起始偏移, 数据)"""
        total = self.length(source)
        size = min(size, total)
        if size <= 0:
            return total, b""
        start = total - size
        return start, self.fetch(source, start, total - 1)

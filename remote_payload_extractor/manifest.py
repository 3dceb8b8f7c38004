# 远程负载提取工具 - payload头部与分区清单解析

import logging
import struct
from collections import OrderedDict
from dataclasses import dataclass

from .binary import BinaryCursor
from .config import (
    MAX_NAME_LENGTH,
    MAX_PARTITIONS,
    MIN_NAME_LENGTH,
    MIN_PARTITIONS,
    PAYLOAD_MAGIC,
    SUPPORTED_VERSION,
    ExtractorConfig,
)
from .container import FormatKind
from .errors import (
    BufferOverrunError,
    HeaderTooSmallError,
    InvalidPartitionSizeError,
    MagicMismatchError,
    ManifestCountError,
    NameLengthError,
    PartitionNotFoundError,
    UnsupportedVersionError,
)
from .fetcher import RangeFetcher
from .operations import OPERATION_RECORD, decode_operations

logger = logging.getLogger(__name__)

HEADER_RECORD = struct.Struct("<IIQI")
HEADER_FIXED_SIZE = HEADER_RECORD.size + 4  # 固定头部 + 条目数
ENTRY_TAIL = struct.Struct("<QQ8x")


@dataclass(frozen=True)
class PayloadHeader:
    magic_valid: bool
    version: int
    manifest_size: int
    metadata_signature_size: int


@dataclass(frozen=True)
class ManifestEntry:
    name: str
    size: int
    source_offset: int

    @property
    def end(self):
        return self.source_offset + self.size


class PartitionManifest:
    """分区名到清单条目的有序映射

    重名条目以第一个为准。操作表保持原始字节，按分区惰性解码。
    """

    def __init__(self, operation_table=b""):
        self._entries = OrderedDict()
        self.operation_table = bytes(operation_table)

    def add(self, entry):
        if entry.name in self._entries:
            logger.warning("清单中分区 '%s' 重复，忽略后出现的条目", entry.name)
            return False
        self._entries[entry.name] = entry
        return True

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def __contains__(self, name):
        return name in self._entries

    @property
    def names(self):
        return list(self._entries)

    def get(self, name):
        return self._entries.get(name)

    def require(self, name):
        try:
            return self._entries[name]
        except KeyError:
            raise PartitionNotFoundError(name, self.names) from None

    def operations_for(self, name):
        """返回分区的操作列表；没有记录的分区返回 None（直接读取完整范围）"""
        cursor = BinaryCursor(self.operation_table, label="操作表")
        while cursor.remaining:
            record_name = read_name(cursor)
            count = cursor.u32()
            if record_name == name:
                return decode_operations(cursor, count)
            cursor.skip(count * OPERATION_RECORD.size)
        return None


def read_name(cursor):
    name_len = cursor.u32()
    if not MIN_NAME_LENGTH <= name_len <= MAX_NAME_LENGTH:
        raise NameLengthError(f"分区名长度 {name_len} 超出范围 [{MIN_NAME_LENGTH}, {MAX_NAME_LENGTH}]")
    return cursor.read_bytes(name_len).decode("utf-8", "ignore")


class HeaderManifestParser:
    """校验 payload 头部并解码分区清单"""

    def __init__(self, fetcher=None, config=None):
        self.config = config or ExtractorConfig()
        self.fetcher = fetcher or RangeFetcher(self.config)

    def read_window(self, source, body_offset):
        total = self.fetcher.length(source)
        end = min(body_offset + self.config.header_window, total) - 1
        if end - body_offset + 1 < HEADER_FIXED_SIZE:
            raise HeaderTooSmallError(
                f"头部数据不足: 需要至少 {HEADER_FIXED_SIZE} 字节, 实际 {max(end - body_offset + 1, 0)} 字节"
            )
        return self.fetcher.fetch(source, body_offset, end)

    def parse_header(self, source, body_offset, format_kind=FormatKind.RAW):
        window = self.read_window(source, body_offset)
        cursor = BinaryCursor(window, label="payload头部")

        magic, version, manifest_size, signature_size = cursor.unpack(HEADER_RECORD)
        if magic != PAYLOAD_MAGIC:
            raise MagicMismatchError(f"无效的payload.bin格式, 魔数: {magic:#010x}")
        if version != SUPPORTED_VERSION:
            raise UnsupportedVersionError(f"不支持的payload版本: {version}")
        header = PayloadHeader(True, version, manifest_size, signature_size)

        manifest_end = HEADER_RECORD.size + manifest_size
        if manifest_end > len(window):
            # 清单超出头部窗口，按声明大小完整读取
            window = self.fetcher.fetch(source, body_offset, body_offset + manifest_end - 1)
            cursor = BinaryCursor(window, offset=HEADER_RECORD.size, label="payload清单")

        count = cursor.u32()
        if not MIN_PARTITIONS <= count <= MAX_PARTITIONS:
            raise ManifestCountError(f"分区数量 {count} 超出范围 [{MIN_PARTITIONS}, {MAX_PARTITIONS}]")

        total = self.fetcher.length(source)
        translate = format_kind is FormatKind.ZIP
        entries = []
        for _ in range(count):
            name = read_name(cursor)
            size, offset = cursor.unpack(ENTRY_TAIL)
            if size == 0:
                raise InvalidPartitionSizeError(f"分区 '{name}' 大小为0")
            if translate:
                offset += body_offset
            entry = ManifestEntry(name, size, offset)
            if entry.end > total:
                raise BufferOverrunError(
                    f"分区 '{name}' 范围 {offset}+{size} 超出资源长度 {total}"
                )
            entries.append(entry)

        table = window[cursor.position:manifest_end] if manifest_end > cursor.position else b""
        manifest = PartitionManifest(table)
        for entry in entries:
            manifest.add(entry)

        logger.info("成功解析 %d 个分区", len(manifest))
        return header, manifest


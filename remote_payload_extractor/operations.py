# 远程负载提取工具 - 分区操作重放

import bz2
import enum
import logging
import lzma
import struct
from dataclasses import dataclass

import zstandard

from .errors import (
    BufferOverrunError,
    CorruptDataError,
    UnsupportedOperationError,
    report_size_mismatch,
)

logger = logging.getLogger(__name__)

OPERATION_RECORD = struct.Struct("<IQQ")


class OperationKind(enum.IntEnum):
    REPLACE = 0
    ZERO = 1
    COPY = 2
    BSDIFF = 3
    REPLACE_BZ = 4
    REPLACE_XZ = 5
    REPLACE_ZSTD = 6


DECOMPRESSORS = {
    OperationKind.REPLACE: lambda x: x,
    OperationKind.REPLACE_BZ: bz2.decompress,
    OperationKind.REPLACE_XZ: lzma.decompress,
    OperationKind.REPLACE_ZSTD: lambda data: zstandard.ZstdDecompressor().decompressobj().decompress(data),
}

SUPPORTED_KINDS = frozenset(DECOMPRESSORS) | {OperationKind.ZERO}
# 输出长度等于 data_length 的操作
FIXED_SIZE_KINDS = frozenset({OperationKind.REPLACE, OperationKind.ZERO})


@dataclass(frozen=True)
class Operation:
    kind: int
    data_offset: int = 0
    data_length: int = 0


def as_kind(value):
    """已知类型转为 OperationKind，未知类型保留原始数值"""
    try:
        return OperationKind(value)
    except ValueError:
        return value


def decode_operations(cursor, count):
    operations = []
    for _ in range(count):
        kind, data_offset, data_length = cursor.unpack(OPERATION_RECORD)
        operations.append(Operation(as_kind(kind), data_offset, data_length))
    return operations


class PayloadAccessor:
    """以 payload 主体为基准的只读访问"""

    def __init__(self, fetcher, source, body_offset, body_length):
        self.fetcher = fetcher
        self.source = source
        self.body_offset = body_offset
        self.body_length = body_length

    def read(self, data_offset, data_length):
        if data_offset < 0 or data_length < 0 or data_offset + data_length > self.body_length:
            raise BufferOverrunError(
                f"操作数据 {data_offset}+{data_length} 超出payload主体长度 {self.body_length}"
            )
        if data_length == 0:
            return b""
        start = self.body_offset + data_offset
        return self.fetcher.fetch(self.source, start, start + data_length - 1)


class OperationExecutor:
    """按清单顺序重放操作，输出为各操作结果的拼接"""

    def execute(self, accessor, operations, partition_name="", expected_size=None):
        # 先检查全部操作类型与输出长度，保证失败时不产生部分输出
        for op in operations:
            if op.kind not in SUPPORTED_KINDS:
                raise UnsupportedOperationError(op.kind, partition_name)
        known_size = sum(op.data_length for op in operations if op.kind in FIXED_SIZE_KINDS)
        self.check_output_size(partition_name, known_size, expected_size)

        chunks = []
        written = 0
        for op in operations:
            if op.kind == OperationKind.ZERO:
                chunk = bytes(op.data_length)
            else:
                data = accessor.read(op.data_offset, op.data_length)
                try:
                    chunk = DECOMPRESSORS[op.kind](data)
                except (OSError, ValueError, lzma.LZMAError, zstandard.ZstdError) as e:
                    raise CorruptDataError(f"分区 '{partition_name}' 操作解压失败: {e}") from e
            written += len(chunk)
            self.check_output_size(partition_name, written, expected_size)
            chunks.append(chunk)

        output = b"".join(chunks)
        if expected_size is not None and len(output) != expected_size:
            report_size_mismatch(logger, f"分区 {partition_name}", expected_size, len(output))
        return output

    @staticmethod
    def check_output_size(partition_name, size, expected_size):
        """输出超过声明的分区大小视为越界，不足时只在最后给出警告"""
        if expected_size is not None and size > expected_size:
            raise BufferOverrunError(
                f"分区 '{partition_name}' 的操作输出 {size} 字节超过声明大小 {expected_size}"
            )

# 远程负载提取工具 - 容器识别与ZIP目录解析

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Optional

from .binary import BinaryCursor, U32
from .config import PAYLOAD_MAGIC, ExtractorConfig
from .errors import BufferOverrunError, ContainerNotFoundError, UnknownFormatError
from .fetcher import RangeFetcher

logger = logging.getLogger(__name__)

# ========== 常量定义 ==========
ZIP_HEADERS = {
    'END': 0x06054B50,
    'LOCAL': 0x04034B50,
    'CENTRAL': 0x02014B50,
    'END64': 0x06064B50,
    'LOCATOR64': 0x07064B50,
}

ZIP64_EXTRA_TAG = 0x0001
SENTINEL_16 = 0xFFFF
SENTINEL_32 = 0xFFFFFFFF

EOCD_RECORD = struct.Struct("<IHHHHIIH")                 # 22 字节
LOCATOR64_RECORD = struct.Struct("<IIQI")                # 20 字节
END64_RECORD = struct.Struct("<IQHHIIQQQQ")              # 56 字节
CENTRAL_RECORD = struct.Struct("<IHHHHHHIIIHHHHHII")     # 46 字节
LOCAL_RECORD = struct.Struct("<IHHHHHIIIHH")             # 30 字节


class FormatKind(enum.Enum):
    RAW = "raw"
    ZIP = "zip"


@dataclass(frozen=True)
class ContainerLocation:
    """payload 主体在资源中的位置，每个会话只计算一次"""
    format_kind: FormatKind
    payload_body_offset: int
    payload_length: Optional[int] = None

    @property
    def is_zip(self):
        return self.format_kind is FormatKind.ZIP


@dataclass(frozen=True)
class CentralDirectoryEntry:
    name: str
    compression_method: int
    compressed_size: int
    uncompressed_size: int
    local_header_offset: int
    extra: bytes = b""


def parse_zip64_extra(extra_field, need_uncompressed=False, need_compressed=False, need_offset=False):
    """解析 ZIP64 扩展字段；只有对应 32 位字段为哨兵值时才会出现在其中"""
    values = {}
    cursor = BinaryCursor(extra_field, label="扩展字段")
    while cursor.remaining >= 4:
        header_id = cursor.u16()
        size = cursor.u16()
        if size > cursor.remaining:
            break
        block = cursor.read_bytes(size)
        if header_id != ZIP64_EXTRA_TAG:
            continue
        data = BinaryCursor(block, label="ZIP64扩展字段")
        for key, needed in (("uncompressed_size", need_uncompressed),
                            ("compressed_size", need_compressed),
                            ("local_header_offset", need_offset)):
            if needed and data.remaining >= 8:
                values[key] = data.u64()
        break
    return values


class ContainerLocator:
    """识别 payload.bin 或 ZIP 容器并确定 payload 主体的绝对偏移"""

    def __init__(self, fetcher=None, config=None):
        self.config = config or ExtractorConfig()
        self.fetcher = fetcher or RangeFetcher(self.config)
        self.candidates = tuple(c.lower() for c in self.config.candidates)

    def locate(self, source):
        length = self.fetcher.length(source)
        if length < 4:
            raise UnknownFormatError(f"文件过小，无法识别格式 ({length} 字节)")

        signature = BinaryCursor(self.fetcher.fetch(source, 0, 3), label="文件签名").u32()
        if signature == ZIP_HEADERS['LOCAL']:
            location = self.locate_in_zip(source)
        elif signature == PAYLOAD_MAGIC:
            location = ContainerLocation(FormatKind.RAW, 0, length)
        else:
            raise UnknownFormatError(f"未知文件格式, 签名: {signature:#010x}")

        logger.info("容器类型: %s, payload偏移: %d", location.format_kind.value, location.payload_body_offset)
        return location

    # ---------- 目录结构 ----------
    def find_end_record(self, tail):
        """从后往前查找目录结束记录，注释必须恰好延伸到文件末尾"""
        marker = U32.pack(ZIP_HEADERS['END'])
        end_pos = tail.rfind(marker)
        while end_pos != -1:
            if end_pos + EOCD_RECORD.size <= len(tail):
                fields = BinaryCursor(tail, end_pos, label="目录结束记录").unpack(EOCD_RECORD)
                if end_pos + EOCD_RECORD.size + fields[7] == len(tail):
                    return end_pos, fields
            end_pos = tail.rfind(marker, 0, end_pos)
        raise ContainerNotFoundError("无法识别ZIP文件结构: 未找到目录结束记录")

    def find_zip_structure(self, source):
        """返回 (中央目录偏移, 中央目录大小, 条目数)"""
        tail_start, tail = self.fetcher.fetch_tail(source, self.config.eocd_search_window)
        end_pos, fields = self.find_end_record(tail)

        disk_entries, entries, cd_size, cd_offset = fields[3], fields[4], fields[5], fields[6]
        if SENTINEL_16 in (disk_entries, entries) or SENTINEL_32 in (cd_size, cd_offset):
            return self.read_zip64_end(source, tail_start + end_pos)
        return cd_offset, cd_size, entries

    def read_zip64_end(self, source, eocd_offset):
        locator_offset = eocd_offset - LOCATOR64_RECORD.size
        if locator_offset < 0:
            raise ContainerNotFoundError("ZIP64 定位记录缺失")
        locator = BinaryCursor(
            self.fetcher.fetch(source, locator_offset, eocd_offset - 1), label="ZIP64定位记录"
        ).unpack(LOCATOR64_RECORD)
        if locator[0] != ZIP_HEADERS['LOCATOR64']:
            raise ContainerNotFoundError(f"无效的ZIP64定位签名: {locator[0]:#010x}")

        end64_offset = locator[2]
        record = self.fetcher.fetch(source, end64_offset, end64_offset + END64_RECORD.size - 1)
        end64 = BinaryCursor(record, label="ZIP64目录结束记录").unpack(END64_RECORD)
        if end64[0] != ZIP_HEADERS['END64']:
            raise ContainerNotFoundError(f"无效的ZIP64目录结束签名: {end64[0]:#010x}")
        # (中央目录偏移, 大小, 条目总数)
        return end64[9], end64[8], end64[7]

    def iter_central_directory(self, cd_data):
        cursor = BinaryCursor(cd_data, label="中央目录")
        while cursor.remaining >= CENTRAL_RECORD.size:
            if U32.unpack(cursor.peek(4))[0] != ZIP_HEADERS['CENTRAL']:
                break
            header = cursor.unpack(CENTRAL_RECORD)
            name_len, extra_len, comment_len = header[10], header[11], header[12]
            name = cursor.read_bytes(name_len).decode("utf-8", "ignore")
            extra = cursor.read_bytes(extra_len)
            cursor.skip(comment_len)

            compressed, uncompressed, local_offset = header[8], header[9], header[16]
            if SENTINEL_32 in (compressed, uncompressed, local_offset):
                zip64 = parse_zip64_extra(
                    extra,
                    need_uncompressed=uncompressed == SENTINEL_32,
                    need_compressed=compressed == SENTINEL_32,
                    need_offset=local_offset == SENTINEL_32,
                )
                uncompressed = zip64.get("uncompressed_size", uncompressed)
                compressed = zip64.get("compressed_size", compressed)
                local_offset = zip64.get("local_header_offset", local_offset)

            yield CentralDirectoryEntry(
                name=name,
                compression_method=header[4],
                compressed_size=compressed,
                uncompressed_size=uncompressed,
                local_header_offset=local_offset,
                extra=extra,
            )

    def is_candidate(self, name):
        lowered = name.lower()
        return any(lowered.endswith(c) for c in self.candidates)

    # ---------- 定位 payload ----------
    def local_body_offset(self, source, local_offset):
        header = BinaryCursor(
            self.fetcher.fetch(source, local_offset, local_offset + LOCAL_RECORD.size - 1), label="本地头"
        ).unpack(LOCAL_RECORD)
        if header[0] != ZIP_HEADERS['LOCAL']:
            raise ContainerNotFoundError(f"无效的本地头签名: {header[0]:#010x}")
        name_len, extra_len = header[9], header[10]
        return local_offset + LOCAL_RECORD.size + name_len + extra_len

    def has_payload_magic(self, source, offset):
        if offset + 4 > self.fetcher.length(source):
            return False
        magic = BinaryCursor(self.fetcher.fetch(source, offset, offset + 3), label="payload签名").u32()
        return magic == PAYLOAD_MAGIC

    def locate_in_zip(self, source):
        cd_offset, cd_size, entries = self.find_zip_structure(source)
        logger.debug("中央目录位置: 偏移=%d, 大小=%d, 条目=%d", cd_offset, cd_size, entries)
        if cd_size == 0:
            raise ContainerNotFoundError("ZIP中央目录为空")
        cd_data = self.fetcher.fetch(source, cd_offset, cd_offset + cd_size - 1)

        for entry in self.iter_central_directory(cd_data):
            if not self.is_candidate(entry.name):
                continue
            if entry.compression_method != 0:
                logger.warning("跳过 %s: 仅支持未压缩条目 (压缩方法 %d)", entry.name, entry.compression_method)
                continue
            if entry.local_header_offset == SENTINEL_32:
                logger.warning("跳过 %s: 缺少ZIP64本地头偏移", entry.name)
                continue
            try:
                body_offset = self.local_body_offset(source, entry.local_header_offset)
            except (ContainerNotFoundError, BufferOverrunError) as e:
                logger.warning("本地头验证失败: %s", e)
                continue
            if not self.has_payload_magic(source, body_offset):
                logger.warning("%s 偏移 %d 处不是payload数据，继续查找", entry.name, body_offset)
                continue
            logger.debug("定位到 %s: 偏移=%d, 大小=%d", entry.name, body_offset, entry.uncompressed_size)
            return ContainerLocation(FormatKind.ZIP, body_offset, entry.uncompressed_size)

        raise ContainerNotFoundError(f"ZIP中未找到 {', '.join(self.config.candidates)}")

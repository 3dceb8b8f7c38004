# 远程负载提取工具 - 错误类型定义

import enum


class ErrorKind(enum.Enum):
    """错误类别（可机器判别）"""
    UNKNOWN_FORMAT = "UnknownFormat"
    CONTAINER_NOT_FOUND = "ContainerNotFound"
    MAGIC_MISMATCH = "MagicMismatch"
    UNSUPPORTED_VERSION = "UnsupportedVersion"
    HEADER_TOO_SMALL = "HeaderTooSmall"
    MANIFEST_COUNT_OUT_OF_RANGE = "ManifestCountOutOfRange"
    NAME_LENGTH_OUT_OF_RANGE = "NameLengthOutOfRange"
    INVALID_PARTITION_SIZE = "InvalidPartitionSize"
    BUFFER_OVERRUN = "BufferOverrun"
    CORRUPT_DATA = "CorruptData"
    PARTITION_NOT_FOUND = "PartitionNotFound"
    UNSUPPORTED_OPERATION = "UnsupportedOperation"
    DOWNLOAD_FAILED = "DownloadFailed"
    SIZE_MISMATCH = "SizeMismatch"
    BUSY = "Busy"


# ========== 自定义异常 ==========
class PayloadError(Exception):
    """提取流程错误基类"""
    kind = None

    def __init__(self, message, kind=None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self):
        return str(self)


class FormatError(PayloadError, ValueError):
    """结构/格式错误，整个会话立即终止"""
    pass


class UnknownFormatError(FormatError):
    """既不是ZIP也不是payload.bin"""
    kind = ErrorKind.UNKNOWN_FORMAT


class ContainerNotFoundError(FormatError):
    """ZIP中未找到可用的payload"""
    kind = ErrorKind.CONTAINER_NOT_FOUND


class MagicMismatchError(FormatError):
    kind = ErrorKind.MAGIC_MISMATCH


class UnsupportedVersionError(FormatError):
    kind = ErrorKind.UNSUPPORTED_VERSION


class HeaderTooSmallError(FormatError):
    kind = ErrorKind.HEADER_TOO_SMALL


class ManifestCountError(FormatError):
    kind = ErrorKind.MANIFEST_COUNT_OUT_OF_RANGE


class NameLengthError(FormatError):
    kind = ErrorKind.NAME_LENGTH_OUT_OF_RANGE


class InvalidPartitionSizeError(FormatError):
    kind = ErrorKind.INVALID_PARTITION_SIZE


class BufferOverrunError(FormatError):
    """读取越过缓冲区或资源边界"""
    kind = ErrorKind.BUFFER_OVERRUN


class CorruptDataError(FormatError):
    """操作数据无法解压"""
    kind = ErrorKind.CORRUPT_DATA


class PartitionNotFoundError(PayloadError):
    """清单中没有请求的分区（可恢复：跳过并警告）"""
    kind = ErrorKind.PARTITION_NOT_FOUND

    def __init__(self, partition_name, available=()):
        self.partition_name = partition_name
        self.available = tuple(available)
        message = f"未找到分区 '{partition_name}'"
        if self.available:
            message += f"，可用分区: {', '.join(self.available)}"
        super().__init__(message)


class UnsupportedOperationError(PayloadError):
    """分区包含无法执行的操作类型"""
    kind = ErrorKind.UNSUPPORTED_OPERATION

    def __init__(self, op_kind, partition_name):
        self.op_kind = op_kind
        self.partition_name = partition_name
        label = getattr(op_kind, "name", op_kind)
        super().__init__(f"分区 '{partition_name}' 包含不支持的操作类型: {label}")


class DownloadFailedError(PayloadError):
    """重试次数用尽后仍下载失败"""
    kind = ErrorKind.DOWNLOAD_FAILED

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class BusyError(PayloadError):
    """会话已有提取任务在运行"""
    kind = ErrorKind.BUSY


def report_size_mismatch(logger, what, expected, actual):
    """大小不一致只记录警告，不影响流程"""
    logger.warning(
        "[%s] %s: 预期 %d 字节, 实际 %d 字节",
        ErrorKind.SIZE_MISMATCH.value, what, expected, actual,
    )

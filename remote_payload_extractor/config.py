# 远程负载提取工具 - 配置与格式常量

from dataclasses import dataclass, field

# ========== 常量定义 ==========
CHUNK_SIZE = 1024 * 1024 * 5  # 5MB块大小
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5  # 线性退避步长(秒)
REQUEST_TIMEOUT = 30
POOL_SIZE = 8
EOCD_SEARCH_WINDOW = 64 * 1024
HEADER_WINDOW = 8 * 1024
PAYLOAD_CANDIDATES = ("payload.bin",)
USER_AGENT = "RemotePayloadExtractor/1.0"

# ========== 格式常量 ==========
PAYLOAD_MAGIC = 0xED26FF3A
SUPPORTED_VERSION = 2
MIN_PARTITIONS = 1
MAX_PARTITIONS = 100
MIN_NAME_LENGTH = 1
MAX_NAME_LENGTH = 256


@dataclass
class ExtractorConfig:
    """提取流程的可调参数"""
    chunk_size: int = CHUNK_SIZE
    max_retries: int = MAX_RETRIES
    retry_backoff: float = RETRY_BACKOFF
    timeout: float = REQUEST_TIMEOUT
    pool_size: int = POOL_SIZE
    eocd_search_window: int = EOCD_SEARCH_WINDOW
    header_window: int = HEADER_WINDOW
    candidates: tuple = field(default=PAYLOAD_CANDIDATES)
    user_agent: str = USER_AGENT

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"块大小必须为正数: {self.chunk_size}")
        if self.max_retries < 1:
            raise ValueError(f"重试次数至少为1: {self.max_retries}")
        if self.retry_backoff < 0:
            raise ValueError(f"退避时间不能为负: {self.retry_backoff}")
        if self.header_window < 24:
            raise ValueError(f"头部窗口过小: {self.header_window}")
        self.candidates = tuple(self.candidates) or PAYLOAD_CANDIDATES

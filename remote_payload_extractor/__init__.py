# 远程负载提取工具：从 payload.bin 或包含它的 ZIP（本地或远程）中按需提取分区镜像

from .config import ExtractorConfig
from .container import ContainerLocation, ContainerLocator, FormatKind
from .errors import ErrorKind, PayloadError
from .fetcher import BufferSource, DownloadRange, LocalFileSource, RangeFetcher, RemoteSource, RetryPolicy
from .manifest import HeaderManifestParser, ManifestEntry, PartitionManifest, PayloadHeader
from .operations import Operation, OperationExecutor, OperationKind, PayloadAccessor
from .orchestrator import (
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

__version__ = "1.0.0"

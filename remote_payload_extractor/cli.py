# 远程负载提取工具 - 命令行入口

import argparse
import logging
import sys

from .config import CHUNK_SIZE, MAX_RETRIES, PAYLOAD_CANDIDATES, REQUEST_TIMEOUT, ExtractorConfig
from .errors import PayloadError
from .orchestrator import (
    DirectorySink,
    Error,
    ExtractionOrchestrator,
    ExtractionRequest,
    ExtractionSession,
    Progress,
    open_source,
)

MB = 1024 * 1024
SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_size(size):
    """按 1024 进制换算，整数值不显示小数"""
    value = float(size)
    for unit in SIZE_UNITS:
        if value < 1024 or unit == SIZE_UNITS[-1]:
            break
        value /= 1024
    text = f"{value:.2f}"
    if text.endswith(".00"):
        text = text[:-3]
    return f"{text} {unit}"


def build_parser():
    parser = argparse.ArgumentParser(
        prog="remote-payload-extractor",
        description="远程分区提取工具",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="使用示例:\n"
               "  1. 列出分区: remote-payload-extractor https://example.com/update.zip\n"
               "  2. 下载分区: remote-payload-extractor https://example.com/update.zip boot vendor_boot\n"
               "  3. 本地文件: remote-payload-extractor ./payload.bin system -o ./out\n"
               "  4. 调整块大小: remote-payload-extractor https://example.com/update.zip boot --chunk-size 8"
    )
    parser.add_argument("source", help="payload.bin 或 ZIP 文件的URL/本地路径")
    parser.add_argument("partitions", nargs="*", help="要提取的分区名称（不指定则列出分区）")
    parser.add_argument("-o", "--output", default=".", help="输出目录，默认当前目录")
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE // MB,
                        help=f"单次请求的最大块大小(MB)，默认值 {CHUNK_SIZE // MB}")
    parser.add_argument("--retries", type=int, default=MAX_RETRIES,
                        help=f"每个请求的最大尝试次数，默认值 {MAX_RETRIES}")
    parser.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT,
                        help=f"请求超时(秒)，默认值 {REQUEST_TIMEOUT}")
    parser.add_argument("--candidate", action="append", metavar="NAME",
                        help=f"ZIP中payload的候选文件名，可多次指定，默认 {', '.join(PAYLOAD_CANDIDATES)}")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="输出调试信息")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="只输出警告和错误")
    return parser


def list_partitions(request, config):
    """列出所有分区"""
    try:
        source = open_source(request, config)
        _, header, manifest = ExtractionOrchestrator(config).prepare(source)
    except (PayloadError, OSError) as e:
        print(f"错误: 无法列出分区: {e}", file=sys.stderr)
        return 1

    print(f"\npayload版本: {header.version}, 分区数: {len(manifest)}")
    print(f"{'分区名称':<16} | {'镜像大小':<10} | {'操作数':<10}")
    print("-" * 45)
    for entry in manifest:
        operations = manifest.operations_for(entry.name)
        ops = "完整镜像" if operations is None else str(len(operations))
        print(f"{entry.name:<16} | {format_size(entry.size):<10} | {ops:<10}")
    return 0


def extract_partitions(request, config, output_dir):
    session = ExtractionSession(config, DirectorySink(output_dir))
    for event in session.start(request):
        if isinstance(event, Progress):
            print(f"{event.partition_name} -> {event.object_handle}")
        elif isinstance(event, Error):
            print(f"错误: {event.message}", file=sys.stderr)
            return 1
    print("全部完成")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = ExtractorConfig(
            chunk_size=args.chunk_size * MB,
            max_retries=args.retries,
            timeout=args.timeout,
            candidates=tuple(args.candidate or PAYLOAD_CANDIDATES),
        )
    except ValueError as e:
        parser.error(str(e))

    request = ExtractionRequest.from_ref(args.source, args.partitions)
    try:
        if not request.partition_names:
            return list_partitions(request, config)
        return extract_partitions(request, config, args.output)
    except KeyboardInterrupt:
        # 后台任务没有取消机制，只停止接收事件
        print("\n操作被用户中断", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

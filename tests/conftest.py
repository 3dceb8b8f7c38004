import pytest

from builders import PayloadBuilder
from remote_payload_extractor.config import ExtractorConfig
from remote_payload_extractor.fetcher import RangeFetcher, RetryPolicy


@pytest.fixture
def delays():
    """记录退避时间而不真正等待"""
    return []


@pytest.fixture
def fast_policy(delays):
    return RetryPolicy(max_attempts=3, backoff=0.5, sleep=delays.append)


@pytest.fixture
def small_config():
    return ExtractorConfig(chunk_size=64)


@pytest.fixture
def fetcher(small_config, fast_policy):
    return RangeFetcher(small_config, fast_policy)


@pytest.fixture
def boot_image():
    return bytes(range(256)) * 3


@pytest.fixture
def simple_payload(boot_image):
    """包含 boot 与 system 两个完整镜像的 payload"""
    builder = PayloadBuilder()
    builder.add_image("boot", boot_image)
    builder.add_image("system", b"SYSTEM" * 50)
    return builder.build()

import pytest

from builders import PayloadBuilder, build_zip
from remote_payload_extractor.cli import build_parser, format_size, main
from remote_payload_extractor.operations import Operation, OperationKind


@pytest.fixture
def payload_file(tmp_path, simple_payload):
    path = tmp_path / "payload.bin"
    path.write_bytes(simple_payload)
    return path


@pytest.mark.parametrize("size,text", [
    (0, "0 B"),
    (1023, "1023 B"),
    (1024, "1 KB"),
    (1536, "1.50 KB"),
    (5 * 1024 * 1024, "5 MB"),
    (3 * 1024 ** 3, "3 GB"),
    (2 * 1024 ** 5, "2 PB"),
    (4 * 1024 ** 6, "4096 PB"),
])
def test_format_size(size, text):
    assert format_size(size) == text


def test_list_partitions(payload_file, capsys):
    assert main([str(payload_file), "-q"]) == 0
    out = capsys.readouterr().out
    assert "boot" in out
    assert "system" in out
    assert "完整镜像" in out


def test_list_partitions_with_operations(tmp_path, capsys):
    builder = PayloadBuilder()
    offset = builder.add_data(b"ABCD")
    builder.add_operations("vendor", 8, [
        Operation(OperationKind.REPLACE, offset, 4),
        Operation(OperationKind.ZERO, 0, 4),
    ])
    data, _ = build_zip([("payload.bin", builder.build())])
    path = tmp_path / "ota.zip"
    path.write_bytes(data)

    assert main([str(path), "-q"]) == 0
    line = next(l for l in capsys.readouterr().out.splitlines() if l.startswith("vendor"))
    assert line.split("|")[-1].strip() == "2"


def test_extract_to_directory(payload_file, tmp_path, boot_image, capsys):
    out_dir = tmp_path / "images"
    assert main([str(payload_file), "boot", "missing", "-o", str(out_dir), "-q"]) == 0
    assert (out_dir / "boot.img").read_bytes() == boot_image
    assert not (out_dir / "missing.img").exists()
    assert "全部完成" in capsys.readouterr().out


def test_extract_error_exit_status(tmp_path, capsys):
    path = tmp_path / "broken.bin"
    path.write_bytes(b"garbage" * 10)
    assert main([str(path), "boot", "-o", str(tmp_path), "-q"]) == 1
    assert "错误" in capsys.readouterr().err


def test_list_error_exit_status(tmp_path, capsys):
    assert main([str(tmp_path / "nope.zip"), "-q"]) == 1
    assert "错误" in capsys.readouterr().err


def test_invalid_chunk_size(payload_file):
    with pytest.raises(SystemExit):
        main([str(payload_file), "boot", "--chunk-size", "0"])


def test_parser_defaults():
    args = build_parser().parse_args(["https://example.com/ota.zip"])
    assert args.partitions == []
    assert args.output == "."
    assert args.chunk_size == 5
    assert args.retries == 3
    assert args.candidate is None

import argparse
import gzip

import pytest

import liftconcat
from conftest import write_lines


def _bed(n):
    return [f"chr2L_iso1\t{i * 10}\t{i * 10 + 1}\tsite{i}\n" for i in range(n)]


@pytest.fixture
def chain_path(tmp_path):
    return write_lines(tmp_path / "dm6ToIso1.chain", ["chain 1 chr2L 10 + 0 10 chr2L 10 + 0 10 1\n10\n"])


def test_tabdel_columns():
    assert liftconcat.tabdel_columns("0,1") == (0, [1])
    assert liftconcat.tabdel_columns("0,3,4") == (0, [3, 4])
    for bad in ["0", "0,1,2,3", "a,b", "-1,2"]:
        with pytest.raises(argparse.ArgumentTypeError):
            liftconcat.tabdel_columns(bad)


def test_parse_arguments_defaults(chain_path):
    args = liftconcat.parse_arguments(["-i", "in.bed", "-c", chain_path, "-l", "iso1"])

    assert args.outpath == "stdout"
    assert args.unmappedpath == "unmapped.txt"
    assert args.tmpdir == "./"
    assert args.processes == 1
    assert args.chunk_size == 0
    assert args.engine == "liftOver"
    assert args.tabdel is None

    config = liftconcat.run_config(args)
    assert not config.parallel


def test_processes_must_be_positive(chain_path):
    with pytest.raises(SystemExit):
        liftconcat.parse_arguments(["-i", "in.bed", "-c", chain_path, "-l", "iso1", "-p", "0"])


def test_main_chunked_run_to_gzip_output(tmp_path, chain_path, fake_liftover):
    inpath = write_lines(tmp_path / "in.bed", _bed(7))
    outpath = str(tmp_path / "out.bed.gz")
    unmapped_path = str(tmp_path / "unmapped.txt")
    staging = tmp_path / "tmp"
    staging.mkdir()

    liftconcat.main(["-i", inpath, "-o", outpath, "-u", unmapped_path, "-c", chain_path,
                     "-l", "iso1", "-T", str(staging), "-p", "3", "-n", "2"])

    with gzip.open(outpath, "rt") as fh:
        lines = fh.read().splitlines()
    assert lines == [f"chr2L_iso1\t{i * 10 + 100}\t{i * 10 + 101}\tsite{i}" for i in range(7)]
    assert len(fake_liftover) == 4
    assert list(staging.iterdir()) == []


def test_main_writes_to_stdout(tmp_path, chain_path, fake_liftover, capsys):
    inpath = write_lines(tmp_path / "in.bed", _bed(2))

    liftconcat.main(["-i", inpath, "-u", str(tmp_path / "u.txt"), "-c", chain_path,
                     "-l", "iso1", "-T", str(tmp_path)])

    assert capsys.readouterr().out == "chr2L_iso1\t100\t101\tsite0\nchr2L_iso1\t110\t111\tsite1\n"


def test_main_exits_nonzero_when_chunks_fail(tmp_path, chain_path, monkeypatch, capsys):
    def failing_run(cmd, **kwargs):
        return liftconcat.liftconcat_transforms.subprocess.CompletedProcess(cmd, 1, stderr="chain mismatch")

    monkeypatch.setattr(liftconcat.liftconcat_transforms.subprocess, "run", failing_run)
    inpath = write_lines(tmp_path / "in.bed", _bed(4))

    with pytest.raises(SystemExit) as excinfo:
        liftconcat.main(["-i", inpath, "-o", str(tmp_path / "out.bed"), "-u", str(tmp_path / "u.txt"),
                         "-c", chain_path, "-l", "iso1", "-T", str(tmp_path), "-p", "2", "-n", "2"])

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert "2 failure(s)" in err
    assert "chain mismatch" in err


def test_main_rejects_missing_input(tmp_path, chain_path):
    with pytest.raises(SystemExit) as excinfo:
        liftconcat.main(["-i", str(tmp_path / "missing.bed"), "-c", chain_path, "-l", "iso1"])
    assert excinfo.value.code == 1

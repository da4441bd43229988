import shutil
import subprocess

import pytest

import liftconcat_transforms
import liftconcat_utilities


def echo_transform(input_path, sink, unmapped_path):
    """Copy the chunk to the output unchanged; nothing is unmapped."""
    with liftconcat_utilities.open_optional_gz(input_path) as fh_in:
        shutil.copyfileobj(fh_in, sink)


def write_lines(path, lines):
    with open(path, "w") as fh:
        fh.writelines(lines)
    return str(path)


@pytest.fixture
def records():
    return [f"chr1\t{i * 10}\t{i * 10 + 5}\trec{i}\n" for i in range(10)]


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def fake_liftover(monkeypatch):
    """
    Stand-in for the liftOver executable: shifts every interval by +100 and sends
    records on chrUn to the unmapped file. Returns the list of commands it received.
    """
    calls = []

    def fake_run(cmd, stdin=None, stdout=None, **kwargs):
        calls.append(cmd)
        unmapped_path = cmd[5]
        with open(unmapped_path, "w") as fh_unmapped:
            for line in stdin:
                fields = line.rstrip("\n").split("\t")
                if fields[0] == "chrUn":
                    fh_unmapped.write("#Deleted in new\n" + line)
                    continue
                fields[1] = str(int(fields[1]) + 100)
                fields[2] = str(int(fields[2]) + 100)
                stdout.write("\t".join(fields) + "\n")
        return subprocess.CompletedProcess(cmd, 0, stdout=None, stderr="")

    monkeypatch.setattr(liftconcat_transforms.subprocess, "run", fake_run)
    return calls

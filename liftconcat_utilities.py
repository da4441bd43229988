#!/usr/bin/env python
import argparse
import gzip
import multiprocessing
import re
import shutil
import sys
from datetime import datetime

__version__ = "1.1.0"

_GZ_PATTERN = re.compile(r'\.gz$')

# Cache for get_liftover_command to avoid repeated PATH lookups
_liftover_command_cache = {}


def is_gzipped(path):
    return bool(_GZ_PATTERN.search(str(path)))


def open_optional_gz(path):
    """
    Open a text file for reading, decompressing it on the fly when the name ends in .gz.
    """
    if is_gzipped(path):
        return gzip.open(path, "rt")
    return open(path, "r")


def create_optional_gz(path):
    """
    Create (truncate) a text file for writing, compressing it when the name ends in .gz.
    """
    if is_gzipped(path):
        return gzip.open(path, "wt")
    return open(path, "w")


def print_w_time(message):
    # stdout may carry lifted records, so progress always goes to stderr
    print(f"[{datetime.now().strftime('%d-%m-%Y %H:%M:%S')}] {message}", file=sys.stderr)


def print_info(message):
    print(f"INFO: {message}", file=sys.stderr)


def print_warning(message):
    print(f"WARNING: {message}", file=sys.stderr)


def print_error(message):
    print(f"ERROR: {message}", file=sys.stderr)


def available_cpus():
    try:
        return multiprocessing.cpu_count()
    except NotImplementedError:
        return 1


def get_liftover_command(command="liftOver"):
    """
    Resolve the external liftOver executable.

    Args:
        command: Name or path of the executable (e.g., 'liftOver', '/opt/ucsc/liftOver')

    Returns:
        Absolute path of the executable, or the name unchanged when it is not on PATH
        so that the failure surfaces when the command is actually run.
    """
    if command in _liftover_command_cache:
        return _liftover_command_cache[command]

    resolved = shutil.which(command) or command
    _liftover_command_cache[command] = resolved
    return resolved


def positive_int(x):
    value = int(x)
    if value < 1:
        raise argparse.ArgumentTypeError("%r must be a positive integer" % (x,))
    return value

#!/usr/bin/env python
"""
Staging resources: short-lived, uniquely named files that carry chunk data between
pipeline stages.

Every resource is created empty under a caller-supplied directory and removed when
the owning scope exits, whichever way it exits. Removal never raises; a file that is
already gone counts as released.
"""
import os
import tempfile
from contextlib import contextmanager

import liftconcat_utilities
from liftconcat_errors import ResourceCreationError


class StagingResource:
    """
    A named staging file.

    Attributes:
        path: Absolute path of the file on disk
        released: True once release() has been called on it
    """

    def __init__(self, path):
        self.path = path
        self.released = False

    def open_for_reading(self):
        return liftconcat_utilities.open_optional_gz(self.path)

    def open_for_writing(self):
        return liftconcat_utilities.create_optional_gz(self.path)

    def __repr__(self):
        return f"StagingResource({self.path!r})"


def _split_pattern(pattern):
    if pattern.count("*") > 1:
        raise ValueError(f"name pattern {pattern!r} may contain at most one '*'")
    prefix, star, suffix = pattern.partition("*")
    if not star:
        # no placeholder: the unique token goes at the end
        return pattern, ""
    return prefix, suffix


def acquire(directory, pattern):
    """
    Create a uniquely named, empty file under directory.

    Args:
        directory: Directory that will hold the file
        pattern: File name pattern; its single '*' is replaced by a unique token
                 (e.g., 'chunk_in_*.bed' -> 'chunk_in_k2x9q1ab.bed')

    Returns:
        StagingResource for the new file

    Raises:
        ResourceCreationError: directory missing or unwritable, or no unused name found
    """
    prefix, suffix = _split_pattern(pattern)
    try:
        fd, path = tempfile.mkstemp(suffix=suffix, prefix=prefix, dir=directory)
    except OSError as e:
        raise ResourceCreationError(f"cannot create {pattern!r} in {directory!r}: {e}") from e
    os.close(fd)
    return StagingResource(os.path.abspath(path))


def release(resource):
    if resource is None or resource.released:
        return
    resource.released = True
    try:
        os.remove(resource.path)
    except FileNotFoundError:
        pass
    except OSError as e:
        liftconcat_utilities.print_warning(f"could not remove staging file {resource.path}: {e}")


def acquire_many(directory, patterns):
    """
    Create one resource per pattern, all or nothing.

    If any acquisition fails the resources created so far are released before the
    ResourceCreationError propagates.
    """
    resources = []
    try:
        for pattern in patterns:
            resources.append(acquire(directory, pattern))
    except ResourceCreationError:
        for resource in resources:
            release(resource)
        raise
    return resources


class StagingScope:
    """
    Owns every resource acquired through it and releases them all on exit.

    Usage:
        with StagingScope(tmpdir) as scope:
            chunk_in = scope.acquire("chunk_in_*.bed")
            ...
        # chunk_in is gone here, also after an exception
    """

    def __init__(self, directory):
        self.directory = directory
        self.resources = []

    def acquire(self, pattern):
        resource = acquire(self.directory, pattern)
        self.resources.append(resource)
        return resource

    def acquire_many(self, patterns):
        resources = acquire_many(self.directory, patterns)
        self.resources.extend(resources)
        return resources

    def release_all(self):
        while self.resources:
            release(self.resources.pop())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release_all()
        return False


@contextmanager
def staged(directory, *patterns):
    """Acquire one resource per pattern for the duration of a with-block."""
    with StagingScope(directory) as scope:
        yield scope.acquire_many(patterns)

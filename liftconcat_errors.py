#!/usr/bin/env python
"""
Error kinds raised while lifting a record stream over in chunks.

Fatal kinds (ResourceCreationError, SourceReadError) abort a run after cleanup.
Collected kinds (ChunkTransformError, CombineError) are gathered while the run
continues and surface once, at the end, inside an AggregateError.
"""


class LiftconcatError(Exception):
    pass


class ResourceCreationError(LiftconcatError):
    """A staging resource could not be created."""


class SourceReadError(LiftconcatError):
    """The input record stream could not be read."""


class LiftOverError(LiftconcatError):
    """The external liftOver executable exited with an error."""

    def __init__(self, command, returncode, stderr=""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"{command[0]} exited with status {returncode}"
        if stderr:
            message += ": " + stderr.strip()
        super().__init__(message)


class ChunkTransformError(LiftconcatError):
    def __init__(self, index, cause):
        self.index = index
        self.cause = cause
        super().__init__(f"chunk {index}: {cause}")


class CombineError(LiftconcatError):
    def __init__(self, path, cause):
        self.path = path
        self.cause = cause
        super().__init__(f"combining {path}: {cause}")


class AggregateError(LiftconcatError):
    """
    Every non-fatal error collected during one run, reported as a single failure.

    Order follows arrival, not chunk order; only membership is meaningful.
    """

    def __init__(self, errors):
        self.errors = list(errors)
        lines = [f"{len(self.errors)} error(s) during liftover:"]
        lines.extend(f"  - {e}" for e in self.errors)
        super().__init__("\n".join(lines))

    def __len__(self):
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)

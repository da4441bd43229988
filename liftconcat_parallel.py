#!/usr/bin/env python
"""
Chunked parallel execution of a liftover transform over a large record stream.

EXECUTION MODEL:

    input stream --> split_records --> chunk_000, chunk_001, ... (staging files)
                                            |
                                            v
                     WorkerPool (W threads, job queue bounded at 8 x W)
                     each worker: transform(chunk_in, chunk_out, chunk_unmapped)
                                            |             |
                                            v             v
                                      ErrorCollector   combine() in creation order
                                                          |
                                                          v
                                        final output + final unmapped file

Chunks may finish in any order (3, 1, 2); they are always combined as 1, 2, 3
because the coordinator records every chunk when it is created, not when it completes.
A failing chunk never stops its siblings: its error is collected and the run still
combines every chunk that succeeded before reporting one AggregateError.
"""
import queue
import shutil
import zlib
from concurrent.futures import ThreadPoolExecutor, wait

import liftconcat_utilities
from liftconcat_errors import (AggregateError, ChunkTransformError, CombineError,
                               ResourceCreationError, SourceReadError)
from liftconcat_staging import StagingScope

# jobs queued per worker before the chunker blocks
JOBS_PER_WORKER = 8

IDLE = "idle"
CHUNKING = "chunking"
DISPATCHING = "dispatching"
DRAINING = "draining"
COMBINING = "combining"
DONE_SUCCESS = "done(success)"
DONE_FAILURE = "done(failure)"

_NO_MORE_JOBS = object()
_END_OF_ERRORS = object()


class RunConfig:
    """
    Settings of one liftover run.

    Attributes:
        workers: Number of concurrent transform workers; 1 or less runs sequentially
        chunk_size: Records per chunk; 0 or less puts the whole input in one chunk
        staging_dir: Directory for the per-chunk staging files
        compress_staging: Gzip the chunk input and output staging files
    """

    def __init__(self, workers=1, chunk_size=0, staging_dir="./", compress_staging=False):
        self.workers = workers
        self.chunk_size = chunk_size
        self.staging_dir = staging_dir
        self.compress_staging = compress_staging

    @property
    def parallel(self):
        return self.workers >= 2 and self.chunk_size >= 1

    def staging_patterns(self):
        # the unmapped file is written by the transform itself, always plain text
        suffix = ".gz" if self.compress_staging else ""
        return ("chunk_in_*.txt" + suffix,
                "chunk_out_*.txt" + suffix,
                "chunk_unmapped_*.txt")


class Chunk:
    """
    A contiguous run of input records and the three staging files that carry it.

    Attributes:
        index: 0-based position in creation order
        input: StagingResource holding the chunk's records
        output: StagingResource receiving the transformed records
        unmapped: StagingResource receiving the records that could not be lifted
        n_records: Number of records in input
    """

    def __init__(self, index, input_resource, output_resource, unmapped_resource, n_records):
        self.index = index
        self.input = input_resource
        self.output = output_resource
        self.unmapped = unmapped_resource
        self.n_records = n_records

    def __repr__(self):
        return f"Chunk({self.index}, n_records={self.n_records})"


def read_records(stream):
    """
    Yield the lines of stream, each terminated by a newline.

    Raises:
        SourceReadError: the stream cannot be read or decoded
    """
    lines = iter(stream)
    while True:
        try:
            line = next(lines)
        except StopIteration:
            return
        except (OSError, EOFError, UnicodeDecodeError, zlib.error) as e:
            raise SourceReadError(f"cannot read input: {e}") from e
        if not line.endswith("\n"):
            line += "\n"
        yield line


def split_records(stream, chunk_size, scope, patterns):
    """
    Partition stream into chunks of at most chunk_size records.

    Lazy: one chunk is read and staged per iteration, and every chunk's input file
    is closed before the chunk is yielded. An empty stream yields nothing. With
    chunk_size < 1 the whole stream becomes a single chunk.

    Args:
        stream: Iterable of text lines
        chunk_size: Maximum records per chunk
        scope: StagingScope that owns (and later releases) every staging file
        patterns: (input, output, unmapped) staging name patterns

    Yields:
        Chunk objects with strictly increasing indices
    """
    records = read_records(stream)
    pending = next(records, None)
    index = 0
    while pending is not None:
        input_resource, output_resource, unmapped_resource = scope.acquire_many(patterns)
        n_records = 0
        try:
            with input_resource.open_for_writing() as fh_chunk:
                while pending is not None and (chunk_size < 1 or n_records < chunk_size):
                    fh_chunk.write(pending)
                    n_records += 1
                    pending = next(records, None)
        except OSError as e:
            raise ResourceCreationError(f"cannot write chunk {index} to {input_resource.path}: {e}") from e
        yield Chunk(index, input_resource, output_resource, unmapped_resource, n_records)
        index += 1


def run_job(transform, chunk):
    """
    Run transform on one chunk; return the error it raised, or None.

    Anything the transform raises, SystemExit included, becomes the chunk's error.
    """
    try:
        with chunk.output.open_for_writing() as sink:
            transform(chunk.input.path, sink, chunk.unmapped.path)
    except BaseException as e:
        return ChunkTransformError(chunk.index, e)
    return None


class ErrorCollector:
    """
    Drains worker results on its own thread into an ordered error list.

    The intake is unbounded so a worker never waits on error reporting.
    """

    def __init__(self):
        self.errors = []
        self._intake = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="liftconcat-errors")
        self._drained = self._executor.submit(self._drain)

    def report(self, error):
        self._intake.put(error)

    def _drain(self):
        while True:
            error = self._intake.get()
            if error is _END_OF_ERRORS:
                return
            if error is None:
                continue
            liftconcat_utilities.print_error(str(error))
            self.errors.append(error)

    def close(self):
        """Stop accepting results and wait until everything reported has been drained."""
        self._intake.put(_END_OF_ERRORS)
        self._drained.result()
        self._executor.shutdown()


class WorkerPool:
    """
    A fixed number of threads pulling chunk jobs from a bounded queue.
    """

    def __init__(self, transform, workers, collector):
        if workers < 1:
            raise ValueError("WorkerPool requires workers >= 1")
        self.transform = transform
        self.workers = workers
        self.collector = collector
        self.jobs = queue.Queue(maxsize=JOBS_PER_WORKER * workers)
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="liftconcat-worker")
        self._running = [self._executor.submit(self._work) for _ in range(workers)]

    def submit(self, chunk):
        # blocks while the queue is full
        self.jobs.put(chunk)

    def _work(self):
        while True:
            chunk = self.jobs.get()
            if chunk is _NO_MORE_JOBS:
                return
            self.collector.report(run_job(self.transform, chunk))

    def close(self):
        """Let the workers finish every queued job, then wait for all of them to exit."""
        if self._closed:
            return
        self._closed = True
        for _ in range(self.workers):
            self.jobs.put(_NO_MORE_JOBS)
        wait(self._running)
        self._executor.shutdown()


def combine(paths, sink):
    """
    Copy the files in paths, in the given order, into sink.

    Empty files contribute nothing. A missing or unreadable file stops the copy.

    Raises:
        CombineError: wrapping the first failure
    """
    for path in paths:
        try:
            with liftconcat_utilities.open_optional_gz(path) as fh_part:
                shutil.copyfileobj(fh_part, sink)
        except (OSError, EOFError, UnicodeDecodeError, zlib.error) as e:
            raise CombineError(path, e) from e


class RunCoordinator:
    """
    Drives one liftover run: chunking, dispatch, draining, combination, cleanup.

    Args:
        transform: Callable transform(input_path, output_sink, unmapped_path) that
                   raises on failure; called concurrently with disjoint arguments
        config: RunConfig (defaults to a sequential run staged in ./)

    After run() returns or raises, `state` is DONE_SUCCESS or DONE_FAILURE,
    `chunks` lists every chunk that was created and `errors` every collected error.
    """

    def __init__(self, transform, config=None):
        self.transform = transform
        self.config = config if config is not None else RunConfig()
        self.state = IDLE
        self.chunks = []
        self.errors = []

    def run(self, stream, sink, unmapped_path):
        """
        Lift the records of stream over into sink and unmapped_path.

        Args:
            stream: Open text stream of input records
            sink: Open writable text stream for the lifted records
            unmapped_path: Path of the file receiving unmapped records

        Returns:
            Number of chunks processed

        Raises:
            ResourceCreationError, SourceReadError: fatal, after cleanup
            AggregateError: one or more chunks or combinations failed; whatever
                succeeded has already been written
        """
        self.state = IDLE
        self.chunks = []
        self.errors = []
        try:
            if self.config.parallel:
                self._run_parallel(stream, sink, unmapped_path)
            else:
                self._run_sequential(stream, sink, unmapped_path)
        except BaseException:
            self._transition(DONE_FAILURE)
            raise

        if self.errors:
            self._transition(DONE_FAILURE)
            raise AggregateError(self.errors)
        self._transition(DONE_SUCCESS)
        return len(self.chunks)

    def _run_sequential(self, stream, sink, unmapped_path):
        with StagingScope(self.config.staging_dir) as scope:
            self._transition(CHUNKING)
            liftconcat_utilities.print_w_time("START: Staging input")
            self.chunks = list(split_records(stream, 0, scope, self.config.staging_patterns()))
            liftconcat_utilities.print_w_time("END: Staging input")

            # the unmapped file exists after every successful run, even if nothing was unmapped
            try:
                open(unmapped_path, "w").close()
            except OSError as e:
                self._record(CombineError(unmapped_path, e))
                return
            if not self.chunks:
                liftconcat_utilities.print_info("Input is empty, nothing to lift over")
                return

            self._transition(DISPATCHING)
            liftconcat_utilities.print_w_time(f"START: Lifting over {self.chunks[0].n_records:,} records")
            try:
                self.transform(self.chunks[0].input.path, sink, unmapped_path)
            except (Exception, SystemExit) as e:
                self._record(ChunkTransformError(0, e))
            liftconcat_utilities.print_w_time("END: Lifting over")

    def _run_parallel(self, stream, sink, unmapped_path):
        workers = self.config.workers
        chunk_size = self.config.chunk_size
        fatal = None
        with StagingScope(self.config.staging_dir) as scope:
            collector = ErrorCollector()
            pool = WorkerPool(self.transform, workers, collector)
            self._transition(CHUNKING)
            liftconcat_utilities.print_w_time(
                f"START: Processing chunks of {chunk_size:,} records with {workers} workers")
            try:
                for chunk in split_records(stream, chunk_size, scope, self.config.staging_patterns()):
                    self._transition(DISPATCHING)
                    self.chunks.append(chunk)
                    pool.submit(chunk)
            except (ResourceCreationError, SourceReadError) as e:
                liftconcat_utilities.print_error(f"{e}; waiting for dispatched chunks to finish")
                fatal = e
            finally:
                self._transition(DRAINING)
                pool.close()
                collector.close()
                self.errors.extend(collector.errors)
            liftconcat_utilities.print_w_time(f"END: Processed {len(self.chunks)} chunks")

            if fatal is not None:
                raise fatal

            self._transition(COMBINING)
            failed = {e.index for e in collector.errors if isinstance(e, ChunkTransformError)}
            combined = [chunk for chunk in self.chunks if chunk.index not in failed]
            if failed:
                liftconcat_utilities.print_warning(
                    f"{len(failed)} of {len(self.chunks)} chunks failed and are left out of the output")

            liftconcat_utilities.print_w_time("START: Combining chunk outputs")
            self._combine([chunk.output.path for chunk in combined], sink)
            try:
                with open(unmapped_path, "w") as fh_unmapped:
                    self._combine([chunk.unmapped.path for chunk in combined], fh_unmapped)
            except OSError as e:
                self._record(CombineError(unmapped_path, e))
            liftconcat_utilities.print_w_time("END: Combining chunk outputs")

    def _combine(self, paths, sink):
        try:
            combine(paths, sink)
        except CombineError as e:
            self._record(e)

    def _transition(self, state):
        if state != self.state:
            liftconcat_utilities.print_info(f"Run state: {self.state} -> {state}")
            self.state = state

    def _record(self, error):
        liftconcat_utilities.print_error(str(error))
        self.errors.append(error)


def run_chunked(stream, sink, unmapped_path, transform, config=None):
    """Convenience wrapper: run one RunCoordinator and return the number of chunks."""
    return RunCoordinator(transform, config).run(stream, sink, unmapped_path)

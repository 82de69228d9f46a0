"""
Parallel coverage collection.

This module runs scripts in worker processes, each with its own
CoverageSession and DataStore, and merges the stores the workers send back.
There is no shared state between workers: aggregation is a post-hoc merge,
so the order in which workers finish does not matter.

**Process Model:**
- Coordinator: splits the scripts into groups, starts one worker per group,
  watches time and memory, merges the results
- Worker: runs its scripts in sequence under coverage and sends its
  serialized store through a pipe

**Safety Limits:**
- Timeout per worker: a worker still running after ``timeout`` seconds is
  killed and its partial data discarded
- Memory limit (RSS, measured with psutil): a worker above ``rss_limit_mb``
  is killed and its partial data discarded
- A script raising inside a worker is logged; the worker continues with its
  next script
"""

import json
import logging
import multiprocessing as mp
import os
import sys
import time
from dataclasses import dataclass, field

import psutil

from .config import CoverageConfig
from .runtime.store import DataStore, merge_all
from .session import CoverageSession

LOG = logging.getLogger(__name__)

# Seconds between two checks of the running workers
POLL_INTERVAL = 0.05


def _context():
    # 'fork' on Unix (faster than 'spawn')
    return mp.get_context("spawn" if sys.platform == "win32" else "fork")


def worker(paths, options, child_conn, close_fd_mask=0):
    """
    Worker process body.

    Args:
        paths: Scripts to run, in order
        options: CoverageConfig.as_dict() of the coordinator
        child_conn: Child end of the result pipe
        close_fd_mask: Bitmask silencing the scripts (1=stdout, 2=stderr)
    """
    class DummyFile:
        """No-op file object to discard output."""
        def write(self, x):
            pass

        def flush(self):
            pass

    if close_fd_mask & 1:
        sys.stdout = DummyFile()
    if close_fd_mask & 2:
        sys.stderr = DummyFile()

    session = CoverageSession(CoverageConfig.from_mapping(options))
    session.start()
    try:
        for path in paths:
            try:
                session.run_path(path)
            except SystemExit as e:
                LOG.debug("%s exited with %r", path, e.code)
            except Exception:
                LOG.exception("script %s failed", path)
    finally:
        session.stop()
    child_conn.send_bytes(json.dumps(session.store.to_dict()).encode("utf-8"))
    child_conn.close()


@dataclass
class WorkerState:
    index: int
    paths: list
    process: object
    conn: object
    started: float
    data: object = None
    failure: str = None


@dataclass
class ParallelResult:
    """
    Outcome of a parallel run.

    Attributes:
        store: Merge of the stores of every worker that finished
        completed: Indexes of the workers whose data was merged
        failed: Worker index to the reason its data was discarded
    """
    store: DataStore
    completed: list = field(default_factory=list)
    failed: dict = field(default_factory=dict)


def split_work(paths, workers):
    """Deal paths round-robin into at most ``workers`` non-empty groups."""
    groups = [[] for _ in range(max(1, min(workers, len(paths))))]
    for index, path in enumerate(paths):
        groups[index % len(groups)].append(path)
    return [g for g in groups if g]


def rss_mb(pid):
    try:
        return psutil.Process(pid).memory_info().rss / 1024 / 1024
    except psutil.Error:
        return 0


def run_parallel(paths, config=None, workers=None, timeout=120, rss_limit_mb=2048, close_fd_mask=0):
    """
    Run scripts in worker processes and merge their coverage.

    Args:
        paths: Scripts to run
        config: CoverageConfig shared by the workers
        workers: Number of worker processes (default: CPU count)
        timeout: Seconds a worker may run (default: 120)
        rss_limit_mb: Memory limit per worker in MB (default: 2048)
        close_fd_mask: Bitmask silencing the scripts (1=stdout, 2=stderr)

    Returns:
        ParallelResult
    """
    config = config if config is not None else CoverageConfig()
    workers = workers or os.cpu_count() or 1
    paths = [os.path.abspath(p) for p in paths]
    ctx = _context()

    states = []
    for index, group in enumerate(split_work(paths, workers)):
        parent_conn, child_conn = ctx.Pipe(duplex=False)
        process = ctx.Process(target=worker, args=(group, config.as_dict(), child_conn, close_fd_mask))
        process.start()
        child_conn.close()
        states.append(WorkerState(index, group, process, parent_conn, time.time()))
        LOG.info("worker %d started with %d scripts (pid %d)", index, len(group), process.pid)

    running = list(states)
    while running:
        for state in list(running):
            if state.conn.poll():
                try:
                    state.data = json.loads(state.conn.recv_bytes().decode("utf-8"))
                except (EOFError, OSError, ValueError) as e:
                    state.failure = "no result: %s" % e
                running.remove(state)
            elif not state.process.is_alive() and not state.conn.poll():
                state.failure = "exited with code %s before sending data" % state.process.exitcode
                running.remove(state)
            elif time.time() - state.started > timeout:
                state.process.kill()
                state.failure = "timeout reached after %s seconds" % timeout
                running.remove(state)
            elif rss_mb(state.process.pid) > rss_limit_mb:
                state.process.kill()
                state.failure = "exceeded %s MB" % rss_limit_mb
                running.remove(state)
        if running:
            time.sleep(POLL_INTERVAL)

    result = ParallelResult(store=None)
    stores = []
    for state in states:
        state.process.join()
        state.conn.close()
        if state.failure is not None:
            LOG.warning("worker %d discarded: %s", state.index, state.failure)
            result.failed[state.index] = state.failure
            continue
        stores.append(DataStore.from_dict(state.data))
        result.completed.append(state.index)
    result.store = merge_all(stores)
    LOG.info("merged coverage of %d workers, %d discarded", len(result.completed), len(result.failed))
    return result

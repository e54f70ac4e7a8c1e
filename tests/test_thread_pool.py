import os
import threading
import time

import pytest

from zarrsinks.thread_pool import ThreadPool


def _collector():
    results = []
    lock = threading.Lock()

    def make_job(value):
        def job():
            with lock:
                results.append(value)

        return job

    return results, make_job


def test_runs_all_jobs():
    errors = []
    pool = ThreadPool(4, errors.append)
    results, make_job = _collector()
    for i in range(50):
        pool.push_job(make_job(i))
    pool.await_stop()
    assert sorted(results) == list(range(50))
    assert errors == []


def test_error_handler_receives_message():
    errors = []
    pool = ThreadPool(2, errors.append)

    def failing():
        raise RuntimeError("boom")

    pool.push_job(failing)
    pool.await_stop()
    assert errors == ["boom"]


def test_failing_job_does_not_stop_others():
    errors = []
    pool = ThreadPool(1, errors.append)
    results, make_job = _collector()

    def failing():
        raise ValueError("bad job")

    pool.push_job(make_job(1))
    pool.push_job(failing)
    pool.push_job(make_job(2))
    pool.await_stop()
    assert results == [1, 2]
    assert errors == ["bad job"]


def test_push_after_stop_raises():
    pool = ThreadPool(1, lambda msg: None)
    pool.await_stop()
    pool.await_stop()
    with pytest.raises(RuntimeError):
        pool.push_job(lambda: None)


def test_await_stop_drains_queue():
    pool = ThreadPool(1, lambda msg: None)
    results, make_job = _collector()

    def slow(value):
        def job():
            time.sleep(0.01)
            make_job(value)()

        return job

    for i in range(10):
        pool.push_job(slow(i))
    pool.await_stop()
    assert results == list(range(10))
    with pytest.raises(RuntimeError):
        pool.push_job(slow(10))
    assert results == list(range(10))


def test_thread_count_clamped_low():
    pool = ThreadPool(0, lambda msg: None)
    try:
        assert pool.n_threads == 1
    finally:
        pool.await_stop()


def test_thread_count_clamped_high():
    pool = ThreadPool(10_000, lambda msg: None)
    try:
        assert pool.n_threads == max(os.cpu_count() or 1, 1)
    finally:
        pool.await_stop()


def test_context_manager_waits_for_jobs():
    results, make_job = _collector()
    with ThreadPool(2, lambda msg: None) as pool:
        for i in range(20):
            pool.push_job(make_job(i))
    assert sorted(results) == list(range(20))
    with pytest.raises(RuntimeError):
        pool.push_job(make_job(99))
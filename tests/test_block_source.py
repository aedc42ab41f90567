#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
test_block_source.py - Verified block fetching
==============================================

Retry with backoff, strong verification, span coalescing, bounded
concurrency and in-order delivery of BlockSource.
"""

import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from rsync_blocksync import (
    BlockSource, BytesDataSource, DataSourceRequester, FileSummary,
    build_checksum_index, decode_checksum_index, call_with_retries,
    TransportError, TransportExhaustedError, ChecksumMismatchError, OutOfRangeError,
    ValidationError, Config,
)

FOX = b"The quick brown fox jumped over the lazy dog"


def make_summary(data, block_size):
    index = decode_checksum_index(build_checksum_index(BytesDataSource(data), block_size))
    return FileSummary.from_index(index, block_size)


class RecordingRequester:
    """Serves ranges from memory and records every request"""

    def __init__(self, data):
        self.data = data
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, start, end):
        with self._lock:
            self.calls.append((start, end))
        return self.data[start:end]


class FlakyRequester(RecordingRequester):
    """Fails the first `failures` calls"""

    def __init__(self, data, failures):
        super().__init__(data)
        self.failures = failures

    def fetch(self, start, end):
        data = super().fetch(start, end)
        with self._lock:
            if len(self.calls) <= self.failures:
                raise TransportError(f"simulated failure {len(self.calls)}")
        return data


class TamperingRequester(RecordingRequester):
    """Returns data whose first byte is flipped"""

    def fetch(self, start, end):
        data = bytearray(super().fetch(start, end))
        data[0] ^= 0xFF
        return bytes(data)


class ShortRequester(RecordingRequester):
    def fetch(self, start, end):
        return super().fetch(start, end)[:-1]


class ReverseDelayRequester(RecordingRequester):
    """Earlier ranges take longer, so completions arrive out of order"""

    def fetch(self, start, end):
        time.sleep(0.002 * (len(self.data) - start) / len(self.data) * 10)
        return super().fetch(start, end)


class InFlightRequester(RecordingRequester):
    """Tracks the peak number of concurrent fetches"""

    def __init__(self, data):
        super().__init__(data)
        self.in_flight = 0
        self.peak = 0

    def fetch(self, start, end):
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.005)
            return super().fetch(start, end)
        finally:
            with self._lock:
                self.in_flight -= 1


class TestBlockSourceFetch(unittest.TestCase):
    """Single block and span fetches"""

    def setUp(self):
        Config.reset_defaults()
        self.summary = make_summary(FOX, 4)
        self.delays = []

    def tearDown(self):
        Config.reset_defaults()

    def source(self, requester, **kwargs):
        return BlockSource(requester, self.summary, sleep=self.delays.append, **kwargs)

    def test_fetch_block(self):
        requester = RecordingRequester(FOX)
        source = self.source(requester)
        self.assertEqual(source.fetch_block(3), b"own ")
        self.assertEqual(requester.calls, [(12, 16)])
        self.assertEqual(source.bytes_read, 4)

    def test_fetch_span(self):
        source = self.source(RecordingRequester(FOX))
        self.assertEqual(source.fetch_span(8, 3), [b"the ", b"lazy", b" dog"])
        self.assertEqual(source.requests, 1)

    def test_fetch_out_of_range(self):
        with self.assertRaises(OutOfRangeError):
            self.source(RecordingRequester(FOX)).fetch_block(11)

    def test_retry_then_success(self):
        """Two failures then success with backoff 0.1s, 0.2s"""
        requester = FlakyRequester(FOX, failures=2)
        source = self.source(requester)
        self.assertEqual(source.fetch_block(0), b"The ")
        self.assertEqual(len(requester.calls), 3)
        self.assertEqual(self.delays, [0.1, 0.2])

    def test_retries_exhausted(self):
        requester = FlakyRequester(FOX, failures=100)
        source = self.source(requester, max_attempts=3)
        with self.assertRaises(TransportExhaustedError) as ctx:
            source.fetch_block(0)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception.__cause__, TransportError)
        self.assertEqual(len(requester.calls), 3)
        self.assertEqual(source.bytes_read, 0)

    def test_mismatch_not_retried(self):
        """Corrupt data fails verification immediately"""
        requester = TamperingRequester(FOX)
        source = self.source(requester)
        with self.assertRaises(ChecksumMismatchError) as ctx:
            source.fetch_block(3)
        self.assertEqual(ctx.exception.block_index, 3)
        self.assertEqual(len(requester.calls), 1)

    def test_short_response_retried(self):
        requester = ShortRequester(FOX)
        source = self.source(requester, max_attempts=2)
        with self.assertRaises(TransportExhaustedError):
            source.fetch_block(0)
        self.assertEqual(len(requester.calls), 2)

    def test_data_source_requester(self):
        source = self.source(DataSourceRequester(BytesDataSource(FOX)))
        self.assertEqual(source.fetch_block(10), b" dog")

    def test_data_source_requester_past_end(self):
        with self.assertRaises(TransportError):
            DataSourceRequester(BytesDataSource(FOX)).fetch(40, 48)

    def test_invalid_settings(self):
        with self.assertRaises(ValidationError):
            self.source(RecordingRequester(FOX), concurrency=0)
        with self.assertRaises(ValidationError):
            self.source(RecordingRequester(FOX), max_attempts=0)


class TestFetchBlocks(unittest.TestCase):
    """Concurrent, coalesced, ordered delivery"""

    def setUp(self):
        Config.reset_defaults()
        self.data = bytes(range(256)) * 4
        self.summary = make_summary(self.data, 16)

    def tearDown(self):
        Config.reset_defaults()

    def test_in_order_despite_completion_order(self):
        requester = ReverseDelayRequester(self.data)
        source = BlockSource(requester, self.summary, concurrency=8, max_request_bytes=16)
        indices = list(range(0, 64, 3))
        got = list(source.fetch_blocks(indices))
        self.assertEqual([i for i, _ in got], indices)
        for block_index, data in got:
            self.assertEqual(data, self.data[block_index * 16:(block_index + 1) * 16])

    def test_consecutive_blocks_coalesced(self):
        requester = RecordingRequester(self.data)
        source = BlockSource(requester, self.summary)
        got = list(source.fetch_blocks([0, 1, 2, 5, 6]))
        self.assertEqual([i for i, _ in got], [0, 1, 2, 5, 6])
        self.assertEqual(sorted(requester.calls), [(0, 48), (80, 112)])
        self.assertEqual(source.bytes_read, 80)

    def test_request_size_cap(self):
        requester = RecordingRequester(self.data)
        source = BlockSource(requester, self.summary, max_request_bytes=32)
        list(source.fetch_blocks([0, 1, 2, 3, 4]))
        self.assertEqual(sorted(requester.calls), [(0, 32), (32, 64), (64, 80)])

    def test_outstanding_budget_limits_in_flight(self):
        """A budget of one block allows one request at a time"""
        requester = InFlightRequester(self.data)
        source = BlockSource(requester, self.summary, concurrency=4,
                             max_outstanding_bytes=16, max_request_bytes=16)
        got = list(source.fetch_blocks(range(8)))
        self.assertEqual(len(got), 8)
        self.assertEqual(requester.peak, 1)

    def test_concurrency_used(self):
        requester = InFlightRequester(self.data)
        source = BlockSource(requester, self.summary, concurrency=4, max_request_bytes=16)
        list(source.fetch_blocks(range(16)))
        self.assertGreater(requester.peak, 1)
        self.assertLessEqual(requester.peak, 4)

    def test_failure_propagates(self):
        requester = TamperingRequester(self.data)
        source = BlockSource(requester, self.summary, concurrency=2, max_request_bytes=16)
        with self.assertRaises(ChecksumMismatchError):
            list(source.fetch_blocks(range(10)))

    def test_empty(self):
        requester = RecordingRequester(self.data)
        source = BlockSource(requester, self.summary)
        self.assertEqual(list(source.fetch_blocks([])), [])
        self.assertEqual(requester.calls, [])


class TestCallWithRetries(unittest.TestCase):
    """Backoff schedule and error classification"""

    def test_backoff_capped(self):
        delays = []

        def always_fail():
            raise TransportError("down")

        with self.assertRaises(TransportExhaustedError):
            call_with_retries(always_fail, "op", max_attempts=4,
                              backoff_base=1.0, backoff_max=1.5, sleep=delays.append)
        self.assertEqual(delays, [1.0, 1.5, 1.5])

    def test_other_errors_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bug")

        with self.assertRaises(ValueError):
            call_with_retries(broken, "op", max_attempts=5, sleep=lambda _: None)
        self.assertEqual(len(calls), 1)

    def test_returns_value(self):
        self.assertEqual(call_with_retries(lambda: 42, "op", sleep=lambda _: None), 42)


if __name__ == '__main__':
    unittest.main()

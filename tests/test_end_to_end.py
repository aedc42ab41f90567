#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
test_end_to_end.py - HTTP reference server, client and CLI
==========================================================

Starts the reference server on a free local port and synchronizes files
against it: checksum index download (with content encodings), range
requests, atomic output replacement and the command line interface.
"""

import contextlib
import http.client
import io
import os
import shutil
import stat
import sys
import tempfile
import threading
import unittest
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import rsync_blocksync
from rsync_blocksync import (
    make_reference_server, fetch_summary, sync_file, main,
    HttpRequester, BytesDataSource, CompressionRegistry, ContentEncoding,
    build_checksum_index, TransportError, TransportExhaustedError,
    ChecksumMismatchError, DecodeError, ChecksumType, Config,
)

FOX = b"The quick brown fox jumped over the lazy dog"


class ServerTestCase(unittest.TestCase):
    """Runs a reference server for FOX in a temporary directory"""

    remote_data = FOX
    strong = ChecksumType.MD5

    def setUp(self):
        Config.reset_defaults()
        Config.RETRY_BACKOFF_BASE = 0.0
        Config.USE_COLORS = False
        self.test_dir = tempfile.mkdtemp()
        self.remote_path = os.path.join(self.test_dir, 'remote.bin')
        with open(self.remote_path, 'wb') as f:
            f.write(self.remote_data)

        self.server = make_reference_server(self.remote_path, port=0,
                                            checksum_type=self.strong)
        host, port = self.server.server_address[:2]
        self.base_url = f"http://{host}:{port}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)
        shutil.rmtree(self.test_dir, ignore_errors=True)
        Config.reset_defaults()

    def write(self, name, data):
        path = os.path.join(self.test_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def read(self, path):
        with open(path, 'rb') as f:
            return f.read()

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(argv)
        return code, out.getvalue(), err.getvalue()

    def raw_get(self, target, headers=None):
        host, port = self.server.server_address[:2]
        conn = http.client.HTTPConnection(host, port, timeout=5)
        try:
            conn.request('GET', target, headers=headers or {})
            response = conn.getresponse()
            return response.status, dict(response.getheaders()), response.read()
        finally:
            conn.close()


class TestReferenceServer(ServerTestCase):
    """Server routes and Range handling"""

    def test_range_request(self):
        requester = HttpRequester(self.base_url + '/content')
        self.assertEqual(requester.fetch(12, 16), b"own ")
        self.assertEqual(requester.fetch(40, 44), b" dog")

    def test_partial_content_headers(self):
        status, headers, body = self.raw_get('/content', {'Range': 'bytes=0-3'})
        self.assertEqual(status, 206)
        self.assertEqual(headers['Content-Range'], 'bytes 0-3/44')
        self.assertEqual(body, b"The ")

    def test_suffix_range(self):
        status, _, body = self.raw_get('/content', {'Range': 'bytes=-3'})
        self.assertEqual(status, 206)
        self.assertEqual(body, b"dog")

    def test_whole_file(self):
        status, _, body = self.raw_get('/content')
        self.assertEqual(status, 200)
        self.assertEqual(body, FOX)

    def test_unsatisfiable_range(self):
        status, _, _ = self.raw_get('/content', {'Range': 'bytes=100-200'})
        self.assertEqual(status, 416)
        with self.assertRaises(TransportError):
            HttpRequester(self.base_url + '/content').fetch(100, 104)

    def test_unknown_path(self):
        status, _, _ = self.raw_get('/nothing')
        self.assertEqual(status, 404)

    def test_bad_block_size(self):
        status, _, _ = self.raw_get('/checksum?blockSize=zero')
        self.assertEqual(status, 400)
        status, _, _ = self.raw_get('/checksum?blockSize=0')
        self.assertEqual(status, 400)

    def test_checksum_encodings(self):
        """The index is compressed with the first accepted encoding"""
        expected = build_checksum_index(BytesDataSource(FOX), 4)
        for encoding in (ContentEncoding.ZSTD, ContentEncoding.LZ4, ContentEncoding.DEFLATE):
            status, headers, body = self.raw_get(
                '/checksum?blockSize=4', {'Accept-Encoding': encoding.value})
            self.assertEqual(status, 200)
            self.assertEqual(headers['Content-Encoding'], encoding.value)
            self.assertEqual(CompressionRegistry.decompress(body, encoding), expected)

        status, headers, body = self.raw_get('/checksum?blockSize=4')
        self.assertNotIn('Content-Encoding', headers)
        self.assertEqual(body, expected)


class TestClientSync(ServerTestCase):
    """fetch_summary and sync_file against the live server"""

    def test_fetch_summary(self):
        summary = fetch_summary(self.base_url + '/checksum', 4)
        self.assertEqual(summary.file_size, 44)
        self.assertEqual(summary.block_count, 11)

    def test_fetch_summary_bad_request_exhausts(self):
        delays = []
        with self.assertRaises(TransportExhaustedError):
            fetch_summary(self.base_url + '/nothing', 4, max_attempts=2, sleep=delays.append)
        self.assertEqual(len(delays), 1)

    def test_sync_changed_byte(self):
        local = self.write('local.bin', FOX[:13] + b"W" + FOX[14:])
        output = os.path.join(self.test_dir, 'out.bin')
        stats = sync_file(local, self.base_url, output, block_size=4)
        self.assertEqual(self.read(output), FOX)
        self.assertEqual(stats.remote_blocks, 1)
        self.assertEqual(stats.bytes_downloaded, 4)

    def test_sync_in_place(self):
        local = self.write('local.bin', b"The quick red fox jumped over the lazy cat")
        sync_file(local, self.base_url, local, block_size=4, concurrency=3)
        self.assertEqual(self.read(local), FOX)

    def test_sync_in_place_keeps_mode(self):
        local = self.write('local.bin', b"The quick red fox jumped over the lazy cat")
        os.chmod(local, 0o644)
        sync_file(local, self.base_url, local, block_size=4)
        self.assertEqual(self.read(local), FOX)
        self.assertEqual(stat.S_IMODE(os.stat(local).st_mode), 0o644)

    def test_sync_missing_local(self):
        output = os.path.join(self.test_dir, 'out.bin')
        stats = sync_file(os.path.join(self.test_dir, 'absent.bin'), self.base_url,
                          output, block_size=4)
        self.assertEqual(self.read(output), FOX)
        self.assertEqual(stats.bytes_downloaded, 44)

    def test_failed_sync_leaves_no_output(self):
        local = self.write('local.bin', b"")
        output = os.path.join(self.test_dir, 'out.bin')
        with mock.patch.object(rsync_blocksync.HttpRequester, 'fetch',
                               side_effect=lambda start, end: b"x" * (end - start)):
            with self.assertRaises(ChecksumMismatchError):
                sync_file(local, self.base_url, output, block_size=4)
        self.assertFalse(os.path.exists(output))
        self.assertEqual(sorted(os.listdir(self.test_dir)), ['local.bin', 'remote.bin'])


class TestCompressionRegistry(unittest.TestCase):
    """Encoding negotiation and error mapping"""

    def test_roundtrip(self):
        data = build_checksum_index(BytesDataSource(FOX * 50), 16)
        for encoding in ContentEncoding:
            packed = CompressionRegistry.compress(data, encoding)
            self.assertEqual(CompressionRegistry.decompress(packed, encoding), data)

    def test_choose(self):
        self.assertEqual(CompressionRegistry.choose(None), ContentEncoding.IDENTITY)
        self.assertEqual(CompressionRegistry.choose('gzip, lz4'), ContentEncoding.LZ4)
        self.assertEqual(CompressionRegistry.choose('zstd;q=0, deflate'), ContentEncoding.DEFLATE)
        self.assertEqual(CompressionRegistry.choose('br'), ContentEncoding.IDENTITY)

    def test_corrupt_payload(self):
        with self.assertRaises(DecodeError):
            CompressionRegistry.decompress(b"not compressed", ContentEncoding.ZSTD)
        with self.assertRaises(DecodeError):
            CompressionRegistry.decompress(b"not compressed", ContentEncoding.DEFLATE)

    def test_unknown_header(self):
        with self.assertRaises(DecodeError):
            CompressionRegistry.from_header('br')


class TestCommandLine(ServerTestCase):
    """rsync-blocksync index / inspect / patch"""

    def test_index_and_inspect(self):
        index_path = os.path.join(self.test_dir, 'remote.idx')
        code, _, _ = self.run_main(['index', self.remote_path, '-b', '4', '-o', index_path, '-q'])
        self.assertEqual(code, 0)
        self.assertEqual(self.read(index_path), build_checksum_index(BytesDataSource(FOX), 4))

        code, out, _ = self.run_main(['inspect', index_path, '-b', '4'])
        self.assertEqual(code, 0)
        self.assertIn('Records:        11', out)

    def test_inspect_wrong_block_size(self):
        index_path = os.path.join(self.test_dir, 'remote.idx')
        self.run_main(['index', self.remote_path, '-b', '4', '-o', index_path, '-q'])
        code, _, err = self.run_main(['inspect', index_path, '-b', '5'])
        self.assertEqual(code, 5)
        self.assertIn('Malformed checksum index', err)

    def test_patch(self):
        local = self.write('local.bin', FOX[:13] + b"W" + FOX[14:])
        output = os.path.join(self.test_dir, 'out.bin')
        code, _, _ = self.run_main(['patch', local, self.base_url, '-b', '4', '-o', output])
        self.assertEqual(code, 0)
        self.assertEqual(self.read(output), FOX)

    def test_patch_dry_run(self):
        local = self.write('local.bin', FOX[:13] + b"W" + FOX[14:])
        code, out, _ = self.run_main(['patch', local, self.base_url, '-b', '4', '--dry-run'])
        self.assertEqual(code, 0)
        self.assertIn('FetchRemote(block=3)', out)
        self.assertEqual(self.read(local), FOX[:13] + b"W" + FOX[14:])

    def test_patch_unreachable(self):
        local = self.write('local.bin', FOX)
        code, _, err = self.run_main(['patch', local, 'http://127.0.0.1:9', '-b', '4',
                                      '--attempts', '1', '-q'])
        self.assertEqual(code, 9)
        self.assertIn('Transport failed', err)


class TestCommandLineSha256(ServerTestCase):
    """patch --strong against a server indexing with SHA-256"""

    strong = ChecksumType.SHA256

    def test_patch_with_matching_strong(self):
        local = self.write('local.bin', FOX[:13] + b"W" + FOX[14:])
        output = os.path.join(self.test_dir, 'out.bin')
        code, _, err = self.run_main(['patch', local, self.base_url, '-b', '4', '-o', output,
                                      '--strong', 'sha256', '-q'])
        self.assertEqual(code, 0, err)
        self.assertEqual(self.read(output), FOX)

    def test_dry_run_with_matching_strong(self):
        local = self.write('local.bin', FOX[:13] + b"W" + FOX[14:])
        code, out, err = self.run_main(['patch', local, self.base_url, '-b', '4',
                                        '--strong', 'sha256', '--dry-run'])
        self.assertEqual(code, 0, err)
        self.assertIn('FetchRemote(block=3)', out)
        self.assertIn('CopyLocal(block=0', out)

    def test_default_strong_rejects_wider_index(self):
        local = self.write('local.bin', FOX)
        code, _, err = self.run_main(['patch', local, self.base_url, '-b', '4',
                                      '-o', os.path.join(self.test_dir, 'out.bin'), '-q'])
        self.assertEqual(code, 2)
        self.assertIn('Validation error', err)


class TestCommandLineXxh128(ServerTestCase):
    """xxh128 has the same width as MD5, so only --strong tells them apart"""

    strong = ChecksumType.XXH128

    def test_patch_with_matching_strong(self):
        local = self.write('local.bin', FOX)
        output = os.path.join(self.test_dir, 'out.bin')
        code, out, err = self.run_main(['patch', local, self.base_url, '-b', '4', '-o', output,
                                        '--strong', 'xxh128'])
        self.assertEqual(code, 0, err)
        self.assertEqual(self.read(output), FOX)
        self.assertIn('Remote blocks:  0', out)

    def test_patch_with_wrong_strong_fails_verification(self):
        local = self.write('local.bin', FOX)
        output = os.path.join(self.test_dir, 'out.bin')
        code, _, _ = self.run_main(['patch', local, self.base_url, '-b', '4', '-o', output, '-q'])
        self.assertEqual(code, 10)
        self.assertFalse(os.path.exists(output))


if __name__ == '__main__':
    unittest.main()

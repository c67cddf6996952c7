import unittest
import gzip
import os
import socket
import sys
import tempfile

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gondola.connection import Connection
from gondola.errors import FileSystemError
from gondola.models import HTTPRequest
from gondola.static import parse_range, resolve_path, serve_static


def make_request(method: str, path: str, headers: str = '') -> HTTPRequest:
    return HTTPRequest.from_head(
        f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n{headers}\r\n".encode('latin-1'))


def header_value(head: bytes, name: str):
    for line in head.decode('latin-1').split('\r\n')[1:]:
        key, _, value = line.partition(':')
        if key.lower() == name.lower():
            return value.strip()
    return None


def read_all(sock: socket.socket) -> bytes:
    data = bytearray()
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return bytes(data)
        data.extend(chunk)


class TestStaticFiles(unittest.TestCase):
    """Test cases for static file resolution and serving."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self._tmp.name, 'public')
        os.makedirs(os.path.join(self.root, 'docs'))
        with open(os.path.join(self.root, 'logo.png'), 'wb') as f:
            f.write(b'\x89PNG fake image')
        with open(os.path.join(self.root, 'docs', 'index.html'), 'w') as f:
            f.write('<h1>docs</h1>')
        with open(os.path.join(self._tmp.name, 'secret.txt'), 'w') as f:
            f.write('top secret')

    def tearDown(self):
        self._tmp.cleanup()

    def _serve(self, method: str, path: str, relative: str, headers: str = ''):
        server_side, client_side = socket.socketpair()
        with server_side, client_side:
            status = serve_static(Connection(server_side),
                                  make_request(method, path, headers),
                                  self.root, relative)
            server_side.shutdown(socket.SHUT_WR)
            return status, read_all(client_side)

    def test_resolve_file(self):
        self.assertEqual(resolve_path(self.root, 'logo.png'),
                         os.path.join(os.path.realpath(self.root), 'logo.png'))

    def test_resolve_directory_index(self):
        path = resolve_path(self.root, 'docs/')
        self.assertTrue(path.endswith(os.path.join('docs', 'index.html')))

    def test_dotdot_inside_root_allowed(self):
        path = resolve_path(self.root, 'docs/../logo.png')
        self.assertTrue(path.endswith('logo.png'))

    def test_traversal_rejected(self):
        for relative in ('../secret.txt', 'docs/../../secret.txt',
                         '%2e%2e/secret.txt', '..%2fsecret.txt', '/../secret.txt'):
            with self.subTest(relative=relative):
                with self.assertRaises(FileSystemError) as ctx:
                    resolve_path(self.root, relative)
                self.assertEqual(ctx.exception.status_code, 403)

    def test_symlink_escape_rejected(self):
        link = os.path.join(self.root, 'escape.txt')
        try:
            os.symlink(os.path.join(self._tmp.name, 'secret.txt'), link)
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not supported")
        with self.assertRaises(FileSystemError) as ctx:
            resolve_path(self.root, 'escape.txt')
        self.assertEqual(ctx.exception.status_code, 403)

    def test_missing_file(self):
        with self.assertRaises(FileSystemError) as ctx:
            resolve_path(self.root, 'nope.png')
        self.assertEqual(ctx.exception.status_code, 404)

    def test_directory_without_index(self):
        os.mkdir(os.path.join(self.root, 'empty'))
        with self.assertRaises(FileSystemError) as ctx:
            resolve_path(self.root, 'empty/')
        self.assertEqual(ctx.exception.status_code, 404)

    def test_nul_byte_rejected(self):
        with self.assertRaises(FileSystemError) as ctx:
            resolve_path(self.root, 'logo.png%00.txt')
        self.assertEqual(ctx.exception.status_code, 400)

    def test_serve_get(self):
        # Act
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png')
        head, _, body = raw.partition(b'\r\n\r\n')

        # Assert
        self.assertEqual(status, 200)
        self.assertTrue(head.startswith(b'HTTP/1.1 200 OK'))
        self.assertIn(b'Content-Type: image/png', head)
        self.assertIn(b'Content-Length: 15', head)
        self.assertIn(b'X-Content-Type-Options: nosniff', head)
        self.assertEqual(body, b'\x89PNG fake image')

    def test_serve_head_has_no_body(self):
        status, raw = self._serve('HEAD', '/assets/logo.png', 'logo.png')
        self.assertEqual(status, 200)
        self.assertTrue(raw.endswith(b'\r\n\r\n'))

    def test_serve_html_charset(self):
        status, raw = self._serve('GET', '/assets/docs/', 'docs/')
        self.assertEqual(status, 200)
        self.assertIn(b'Content-Type: text/html; charset=utf-8', raw)
        self.assertTrue(raw.endswith(b'<h1>docs</h1>'))

    def test_serve_rejects_post(self):
        status, raw = self._serve('POST', '/assets/logo.png', 'logo.png')
        self.assertEqual(status, 405)
        self.assertIn(b'Allow: GET, HEAD', raw)

    def test_serve_traversal_never_leaks(self):
        status, raw = self._serve('GET', '/assets/../secret.txt', '../secret.txt')
        self.assertEqual(status, 403)
        self.assertNotIn(b'top secret', raw)

    def test_serve_is_idempotent(self):
        first = self._serve('GET', '/assets/logo.png', 'logo.png')
        second = self._serve('GET', '/assets/logo.png', 'logo.png')
        self.assertEqual(first, second)

    def test_cache_validators_present(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png')
        head = raw.partition(b'\r\n\r\n')[0]
        self.assertEqual(status, 200)
        self.assertEqual(header_value(head, 'Cache-Control'), 'max-age=31536000')
        self.assertTrue(header_value(head, 'ETag').startswith('"'))
        self.assertEqual(header_value(head, 'Accept-Ranges'), 'bytes')

    def test_if_none_match_not_modified(self):
        # Arrange
        _, raw = self._serve('GET', '/assets/logo.png', 'logo.png')
        etag = header_value(raw.partition(b'\r\n\r\n')[0], 'ETag')

        # Act
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  f'If-None-Match: {etag}\r\n')

        # Assert
        self.assertEqual(status, 304)
        self.assertTrue(raw.startswith(b'HTTP/1.1 304 Not Modified'))
        self.assertTrue(raw.endswith(b'\r\n\r\n'))
        self.assertEqual(header_value(raw, 'ETag'), etag)

    def test_if_modified_since_not_modified(self):
        _, raw = self._serve('GET', '/assets/logo.png', 'logo.png')
        last_modified = header_value(raw.partition(b'\r\n\r\n')[0], 'Last-Modified')

        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  f'If-Modified-Since: {last_modified}\r\n')

        self.assertEqual(status, 304)
        self.assertNotIn(b'PNG', raw)

    def test_if_modified_since_in_the_past(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'If-Modified-Since: Mon, 01 Jan 1990 00:00:00 GMT\r\n')
        self.assertEqual(status, 200)
        self.assertTrue(raw.endswith(b'\x89PNG fake image'))

    def test_stale_etag_served_in_full(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'If-None-Match: "0-0"\r\n')
        self.assertEqual(status, 200)
        self.assertTrue(raw.endswith(b'\x89PNG fake image'))

    def test_range_request(self):
        # Act
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'Range: bytes=1-3\r\n')
        head, _, body = raw.partition(b'\r\n\r\n')

        # Assert
        self.assertEqual(status, 206)
        self.assertTrue(head.startswith(b'HTTP/1.1 206 Partial Content'))
        self.assertEqual(header_value(head, 'Content-Range'), 'bytes 1-3/15')
        self.assertEqual(header_value(head, 'Content-Length'), '3')
        self.assertEqual(body, b'PNG')

    def test_suffix_range_request(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'Range: bytes=-5\r\n')
        self.assertEqual(status, 206)
        self.assertTrue(raw.endswith(b'\r\n\r\nimage'))

    def test_unsatisfiable_range(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'Range: bytes=100-200\r\n')
        self.assertEqual(status, 416)
        self.assertEqual(header_value(raw.partition(b'\r\n\r\n')[0], 'Content-Range'),
                         'bytes */15')

    def test_if_range_mismatch_serves_whole_file(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'Range: bytes=1-3\r\nIf-Range: "stale"\r\n')
        self.assertEqual(status, 200)
        self.assertTrue(raw.endswith(b'\x89PNG fake image'))

    def test_parse_range(self):
        self.assertEqual(parse_range('bytes=0-', 10), (0, 9))
        self.assertEqual(parse_range('bytes=5-100', 10), (5, 9))
        self.assertEqual(parse_range('bytes=-3', 10), (7, 9))
        self.assertIsNone(parse_range('items=0-1', 10))
        self.assertIsNone(parse_range('bytes=0-1,4-5', 10))
        self.assertIsNone(parse_range('bytes=abc', 10))
        for value in ('bytes=10-', 'bytes=-0', 'bytes=4-2'):
            with self.subTest(value=value):
                with self.assertRaises(FileSystemError) as ctx:
                    parse_range(value, 10)
                self.assertEqual(ctx.exception.status_code, 416)

    def test_gzip_when_accepted(self):
        # Act
        status, raw = self._serve('GET', '/assets/docs/', 'docs/',
                                  'Accept-Encoding: gzip, deflate\r\n')
        head, _, body = raw.partition(b'\r\n\r\n')

        # Assert
        self.assertEqual(status, 200)
        self.assertEqual(header_value(head, 'Content-Encoding'), 'gzip')
        self.assertEqual(header_value(head, 'Vary'), 'Accept-Encoding')
        self.assertIsNone(header_value(head, 'Content-Length'))
        self.assertEqual(gzip.decompress(body), b'<h1>docs</h1>')

    def test_gzip_refused_with_zero_quality(self):
        status, raw = self._serve('GET', '/assets/docs/', 'docs/',
                                  'Accept-Encoding: gzip;q=0\r\n')
        self.assertEqual(status, 200)
        self.assertIsNone(header_value(raw.partition(b'\r\n\r\n')[0], 'Content-Encoding'))
        self.assertTrue(raw.endswith(b'<h1>docs</h1>'))

    def test_images_not_compressed(self):
        status, raw = self._serve('GET', '/assets/logo.png', 'logo.png',
                                  'Accept-Encoding: gzip\r\n')
        self.assertEqual(status, 200)
        self.assertIsNone(header_value(raw.partition(b'\r\n\r\n')[0], 'Content-Encoding'))
        self.assertTrue(raw.endswith(b'\x89PNG fake image'))

    def test_gzip_head_has_no_body(self):
        status, raw = self._serve('HEAD', '/assets/docs/', 'docs/',
                                  'Accept-Encoding: gzip\r\n')
        self.assertEqual(status, 200)
        self.assertIn(b'Content-Encoding: gzip', raw)
        self.assertTrue(raw.endswith(b'\r\n\r\n'))

    def test_body_bytes_counted(self):
        server_side, client_side = socket.socketpair()
        with server_side, client_side:
            conn = Connection(server_side)
            serve_static(conn, make_request('GET', '/assets/logo.png'), self.root, 'logo.png')
        self.assertEqual(conn.bytes_written, 15)


if __name__ == '__main__':
    unittest.main()

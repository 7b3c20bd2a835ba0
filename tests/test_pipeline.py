#!/usr/bin/env python3
"""
Tests for the hash and check pipelines.
"""

import io
import os
import sys
import shutil
import hashlib
import tempfile
import threading
import unittest
from pathlib import Path

# Add parent directory to path so we can import parsum
sys.path.insert(0, str(Path(__file__).parent.parent))

import parsum


EMPTY_SHA256 = 'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class PipelineTestCase(unittest.TestCase):
    """Shared helpers for running pipelines against a temp directory."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def make_file(self, name, data: bytes) -> str:
        path = self.test_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path)

    def run_pipeline(self, stdin_data=b"", **option_kwargs):
        options = parsum.Options(**option_kwargs)
        out = io.BytesIO()
        pipeline = parsum.SumPipeline(options, parsum.StdinClaim(io.BytesIO(stdin_data)), out=out)
        if options.check:
            code = pipeline.check_files()
        else:
            code = pipeline.hash_files()
        return code, out.getvalue().decode('utf-8', 'surrogateescape')


class TestHashMode(PipelineTestCase):
    """Test hash mode output and failure accounting."""

    def test_empty_stdin(self):
        code, output = self.run_pipeline()
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{EMPTY_SHA256}  -\n")

    def test_single_job_preserves_input_order(self):
        paths = [self.make_file(f"f{i}.txt", f"content {i}".encode()) for i in range(20)]
        paths.reverse()
        code, output = self.run_pipeline(paths=paths, jobs=1)
        self.assertEqual(code, 0)
        expected = ''.join(f"{sha256_hex(Path(p).read_bytes())}  {parsum.to_unix_path(p)}\n"
                           for p in paths)
        self.assertEqual(output, expected)

    def test_many_jobs_hash_everything(self):
        paths = [self.make_file(f"f{i}.txt", f"content {i}".encode()) for i in range(50)]
        code, output = self.run_pipeline(paths=paths, jobs=8)
        self.assertEqual(code, 0)
        expected = sorted(f"{sha256_hex(Path(p).read_bytes())}  {parsum.to_unix_path(p)}"
                          for p in paths)
        self.assertEqual(sorted(output.splitlines()), expected)

    def test_tagged_binary_zero(self):
        path = self.make_file("x.bin", b"x")
        code, output = self.run_pipeline(paths=[path], tag=True)
        self.assertEqual(output, f"SHA256 ({parsum.to_unix_path(path)}) = {sha256_hex(b'x')}\n")
        code, output = self.run_pipeline(paths=[path], binary=True, zero=True)
        self.assertEqual(output, f"{sha256_hex(b'x')} *{parsum.to_unix_path(path)}\0")

    def test_other_algorithm(self):
        path = self.make_file("x.bin", b"x")
        code, output = self.run_pipeline(paths=[path], algorithm='md5', tag=True)
        self.assertEqual(code, 0)
        self.assertTrue(output.startswith("MD5 ("))
        self.assertTrue(output.rstrip("\n").endswith(hashlib.md5(b"x").hexdigest()))

    def test_missing_file_fails_run_but_continues(self):
        good = self.make_file("good.txt", b"good")
        missing = str(self.test_dir / "missing.txt")
        with self.assertLogs('parsum', level='ERROR') as logs:
            code, output = self.run_pipeline(paths=[missing, good])
        self.assertEqual(code, 1)
        self.assertIn(f"{sha256_hex(b'good')}  {parsum.to_unix_path(good)}\n", output)
        self.assertTrue(any("No such file or directory" in line for line in logs.output))

    def test_directory_without_recursive_is_error(self):
        with self.assertLogs('parsum', level='ERROR'):
            code, output = self.run_pipeline(paths=[str(self.test_dir)])
        self.assertEqual(code, 1)
        self.assertEqual(output, "")

    def test_recursive(self):
        self.make_file("a.txt", b"a")
        self.make_file(os.path.join("sub", "b.txt"), b"b")
        code, output = self.run_pipeline(paths=[str(self.test_dir)], recursive=True, jobs=2)
        self.assertEqual(code, 0)
        lines = sorted(output.splitlines())
        self.assertEqual(len(lines), 2)
        self.assertTrue(any(line.endswith("/sub/b.txt") for line in lines))

    def test_escaped_name_in_output(self):
        if os.name == 'nt':
            self.skipTest("newlines are not valid in Windows file names")
        path = self.make_file("new\nline", b"n")
        code, output = self.run_pipeline(paths=[path])
        self.assertEqual(output, f"\\{sha256_hex(b'n')}  {path.replace(chr(10), chr(92) + 'n')}\n")


class TestCheckMode(PipelineTestCase):
    """Test check mode classification and aggregation."""

    def manifest(self, name, lines):
        return self.make_file(name, ''.join(line + "\n" for line in lines).encode())

    def test_all_ok(self):
        a = self.make_file("a.txt", b"a")
        b = self.make_file("b.txt", b"b")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}", f"{sha256_hex(b'b')} *{b}"])
        code, output = self.run_pipeline(paths=[sums], check=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{a}: OK\n{b}: OK\n")

    def test_quiet_hides_ok_only(self):
        a = self.make_file("a.txt", b"a")
        b = self.make_file("b.txt", b"changed")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}", f"{sha256_hex(b'b')}  {b}"])
        with self.assertLogs('parsum', level='WARNING'):
            code, output = self.run_pipeline(paths=[sums], check=True, quiet=True)
        self.assertEqual(code, 1)
        self.assertEqual(output, f"{b}: FAILED\n")

    def test_status_prints_nothing(self):
        a = self.make_file("a.txt", b"a")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}"])
        code, output = self.run_pipeline(paths=[sums], check=True, status=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, "")

    def test_one_good_line_one_short_hex(self):
        a = self.make_file("a.txt", b"a")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}", f"{sha256_hex(b'a')[:63]}  {a}"])
        code, output = self.run_pipeline(paths=[sums], check=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{a}: OK\n")

    def test_strict_fails_on_bad_line(self):
        a = self.make_file("a.txt", b"a")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}", "junk"])
        with self.assertLogs('parsum', level='WARNING') as logs:
            code, _ = self.run_pipeline(paths=[sums], check=True, strict=True)
        self.assertEqual(code, 1)
        self.assertIn("WARNING:parsum:WARNING: 1 line is improperly formatted", logs.output)

    def test_warn_logs_bad_line(self):
        a = self.make_file("a.txt", b"a")
        sums = self.manifest("sums", [f"{sha256_hex(b'a')}  {a}", "junk"])
        with self.assertLogs('parsum', level='WARNING') as logs:
            self.run_pipeline(paths=[sums], check=True, warn=True)
        self.assertTrue(any(f"{sums}: 2: improperly formatted SHA256 checksum line" in line
                            for line in logs.output))

    def test_empty_manifest_and_mismatch(self):
        a = self.make_file("a.txt", b"a")
        empty = self.manifest("empty", ["no checksums here"])
        bad = self.manifest("bad", [f"{sha256_hex(b'not a')}  {a}"])
        with self.assertLogs('parsum', level='WARNING') as logs:
            code, output = self.run_pipeline(paths=[empty, bad], check=True)
        self.assertEqual(code, 1)
        self.assertEqual(output, f"{a}: FAILED\n")
        messages = '\n'.join(logs.output)
        self.assertIn(f"{empty}: no properly formatted SHA256 checksum lines found", messages)
        self.assertIn(f"{empty}: no file was verified", messages)
        self.assertNotIn(f"{bad}: no file was verified", messages)
        self.assertIn("WARNING: 1 computed checksum did not match", messages)

    def test_missing_file_is_unreadable(self):
        missing = str(self.test_dir / "missing.txt")
        sums = self.manifest("sums", [f"{EMPTY_SHA256}  {missing}"])
        with self.assertLogs('parsum', level='WARNING') as logs:
            code, output = self.run_pipeline(paths=[sums], check=True)
        self.assertEqual(code, 1)
        self.assertEqual(output, f"{missing}: FAILED open or read\n")
        self.assertIn("WARNING: 1 listed file could not be read", '\n'.join(logs.output))

    def test_ignore_missing_skips_missing_file(self):
        a = self.make_file("a.txt", b"a")
        missing = str(self.test_dir / "missing.txt")
        sums = self.manifest("sums", [f"{EMPTY_SHA256}  {missing}", f"{sha256_hex(b'a')}  {a}"])
        code, output = self.run_pipeline(paths=[sums], check=True, ignore_missing=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{a}: OK\n")

    def test_ignore_missing_with_nothing_verified(self):
        missing = str(self.test_dir / "missing.txt")
        sums = self.manifest("sums", [f"{EMPTY_SHA256}  {missing}"])
        with self.assertLogs('parsum', level='ERROR') as logs:
            code, output = self.run_pipeline(paths=[sums], check=True, ignore_missing=True)
        self.assertEqual(code, 1)
        self.assertEqual(output, "")
        self.assertIn(f"{sums}: no file was verified", '\n'.join(logs.output))

    def test_ignore_missing_keeps_other_io_errors(self):
        directory = str(self.test_dir / "a_directory")
        os.mkdir(directory)
        sums = self.manifest("sums", [f"{EMPTY_SHA256}  {directory}"])
        with self.assertLogs('parsum', level='ERROR'):
            code, output = self.run_pipeline(paths=[sums], check=True, ignore_missing=True)
        self.assertEqual(code, 1)
        self.assertEqual(output, f"{directory}: FAILED open or read\n")

    @unittest.skipIf(os.name == 'nt' or os.geteuid() == 0, "needs POSIX permissions as non-root")
    def test_ignore_missing_keeps_permission_denied(self):
        locked = self.make_file("locked.txt", b"secret")
        os.chmod(locked, 0)
        try:
            sums = self.manifest("sums", [f"{sha256_hex(b'secret')}  {locked}"])
            with self.assertLogs('parsum', level='ERROR') as logs:
                code, output = self.run_pipeline(paths=[sums], check=True, ignore_missing=True)
        finally:
            os.chmod(locked, 0o600)
        self.assertEqual(code, 1)
        self.assertEqual(output, f"{locked}: FAILED open or read\n")
        self.assertTrue(any("Permission denied" in line for line in logs.output))

    def test_single_job_preserves_manifest_order(self):
        paths = [self.make_file(f"f{i}.txt", f"{i}".encode()) for i in range(15)]
        paths.reverse()
        sums = self.manifest("sums", [f"{sha256_hex(Path(p).read_bytes())}  {p}" for p in paths])
        code, output = self.run_pipeline(paths=[sums], check=True, jobs=1)
        self.assertEqual(code, 0)
        self.assertEqual(output, ''.join(f"{p}: OK\n" for p in paths))

    def test_many_jobs_check_everything(self):
        paths = [self.make_file(f"f{i}.txt", f"{i}".encode()) for i in range(40)]
        sums = self.manifest("sums", [f"{sha256_hex(Path(p).read_bytes())}  {p}" for p in paths])
        code, output = self.run_pipeline(paths=[sums], check=True, jobs=6)
        self.assertEqual(code, 0)
        self.assertEqual(sorted(output.splitlines()), sorted(f"{p}: OK" for p in paths))

    def test_manifest_from_stdin(self):
        a = self.make_file("a.txt", b"a")
        stdin = f"{sha256_hex(b'a')}  {a}\n".encode()
        code, output = self.run_pipeline(stdin_data=stdin, check=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{a}: OK\n")

    def test_tagged_crlf_manifest(self):
        a = self.make_file("a.txt", b"a")
        sums = self.make_file("sums", f"SHA256 ({a}) = {sha256_hex(b'a')}\r\n".encode())
        code, output = self.run_pipeline(paths=[sums], check=True, tag=True, crlf=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"{a}: OK\n")

    def test_hash_then_check_round_trip(self):
        paths = [self.make_file(name, name.encode()) for name in ("one", "two", "three")]
        code, manifest = self.run_pipeline(paths=paths, tag=True, jobs=3)
        self.assertEqual(code, 0)
        sums = self.make_file("sums", manifest.encode('utf-8', 'surrogateescape'))
        code, output = self.run_pipeline(paths=[sums], check=True, tag=True, jobs=3)
        self.assertEqual(code, 0)
        self.assertEqual(len(output.splitlines()), 3)

    def test_newline_name_status_escaped(self):
        if os.name == 'nt':
            self.skipTest("newlines are not valid in Windows file names")
        path = self.make_file("new\nline", b"n")
        escaped = path.replace("\n", "\\n")
        sums = self.manifest("sums", [f"\\{sha256_hex(b'n')}  {escaped}"])
        code, output = self.run_pipeline(paths=[sums], check=True)
        self.assertEqual(code, 0)
        self.assertEqual(output, f"\\{escaped}: OK\n")


class TestPipelineResilience(PipelineTestCase):
    """Test that per-item failures never stall the worker pool."""

    def run_with_timeout(self, target, timeout=30):
        outcome = {}

        def runner():
            outcome['value'] = target()

        thread = threading.Thread(target=runner, daemon=True)
        thread.start()
        thread.join(timeout)
        self.assertFalse(thread.is_alive(), "pipeline did not finish")
        return outcome['value']

    def test_embedded_nul_name_is_unreadable(self):
        paths = [self.make_file(f"f{i}.txt", f"{i}".encode()) for i in range(20)]
        lines = [f"{EMPTY_SHA256}  bad\0name"]
        lines.extend(f"{sha256_hex(Path(p).read_bytes())}  {p}" for p in paths)
        sums = self.make_file("sums", ''.join(line + "\n" for line in lines).encode())

        with self.assertLogs('parsum', level='ERROR') as logs:
            code, output = self.run_with_timeout(
                lambda: self.run_pipeline(paths=[sums], check=True, jobs=1))
        self.assertEqual(code, 1)
        self.assertEqual(output.splitlines()[0], "bad\0name: FAILED open or read")
        self.assertEqual(output.count(": OK\n"), 20)
        self.assertIn("WARNING: 1 listed file could not be read", '\n'.join(logs.output))

    def test_worker_survives_unexpected_exception(self):
        pipeline = parsum.SumPipeline(parsum.Options(jobs=1), out=io.BytesIO())
        collected = []

        def produce(put):
            for i in range(50):
                put(i)

        def work(calculator, item):
            if item % 10 == 3:
                raise RuntimeError(f"cannot process {item}")
            return item

        with self.assertLogs('parsum', level='ERROR') as logs:
            self.run_with_timeout(lambda: pipeline._run(produce, work, collected.append))
        self.assertEqual(len(collected), 45)
        self.assertEqual(pipeline.errors.value, 5)
        self.assertTrue(any("cannot process 3" in line for line in logs.output))


class TestCheckTotals(unittest.TestCase):
    """Test the check-mode aggregator directly."""

    def test_skipped_does_not_count_as_checked(self):
        totals = parsum.CheckTotals(['a', 'b'])
        totals.add_result(parsum.CheckResult(0, 'x', parsum.CheckStatus.SKIPPED))
        totals.add_result(parsum.CheckResult(1, 'y', parsum.CheckStatus.UNREADABLE))
        totals.add_result(parsum.CheckResult(0, 'z', parsum.CheckStatus.SKIPPED))
        self.assertEqual(totals.unverified_paths(), ['a'])

    def test_exit_code(self):
        totals = parsum.CheckTotals(['a'])
        totals.add_result(parsum.CheckResult(0, 'x', parsum.CheckStatus.VERIFIED))
        totals.bad_lines.increment()
        self.assertEqual(totals.finish(strict=False), 0)

        totals = parsum.CheckTotals(['a'])
        totals.add_result(parsum.CheckResult(0, 'x', parsum.CheckStatus.VERIFIED))
        totals.bad_lines.increment()
        with self.assertLogs('parsum', level='WARNING'):
            self.assertEqual(totals.finish(strict=True), 1)

    def test_plural_warnings(self):
        totals = parsum.CheckTotals(['a'])
        for _ in range(2):
            totals.add_result(parsum.CheckResult(0, 'x', parsum.CheckStatus.MISMATCH))
        with self.assertLogs('parsum', level='WARNING') as logs:
            self.assertEqual(totals.finish(), 1)
        self.assertIn("WARNING:parsum:WARNING: 2 computed checksums did not match", logs.output)


if __name__ == '__main__':
    unittest.main()

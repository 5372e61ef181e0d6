import itertools

from twisted.trial import unittest

from sftpgate.upload import UploadBuffer, UploadReassembler, UploadComplete, UploadTooLarge


class Buffer(unittest.TestCase):
    def test_in_order(self):
        b = UploadBuffer()
        b.write(0, b"hello ")
        b.write(6, b"world")
        self.assertEqual(len(b), 11)
        self.assertEqual(b.getvalue(), b"hello world")

    def test_gap_is_zero_filled(self):
        b = UploadBuffer()
        b.write(0, b"a")
        b.write(4, b"c")
        b.write(1, b"b")
        self.assertEqual(b.getvalue(), b"ab\x00\x00c")

    def test_overlap_takes_latest(self):
        b = UploadBuffer()
        b.write(0, b"aaaaaa")
        b.write(2, b"XY")
        self.assertEqual(b.getvalue(), b"aaXYaa")
        b.write(4, b"ZZZZ")
        self.assertEqual(b.getvalue(), b"aaXYZZZZ")

    def test_never_shrinks(self):
        b = UploadBuffer()
        b.write(0, b"0123456789")
        b.write(0, b"ab")
        self.assertEqual(len(b), 10)
        self.assertEqual(b.getvalue(), b"ab23456789")

    def test_capacity_respects_limit(self):
        b = UploadBuffer(limit=10)
        b.write(0, b"12345")
        b.write(5, b"678")
        self.assertTrue(len(b._data) <= 10)
        self.assertEqual(b.getvalue(), b"12345678")

    def test_many_small_writes_amortized(self):
        b = UploadBuffer()
        growths = 0
        capacity = 0
        for i in range(4096):
            b.write(i, b"x")
            if len(b._data) != capacity:
                growths += 1
                capacity = len(b._data)
        self.assertEqual(b.getvalue(), b"x" * 4096)
        self.assertTrue(growths <= 14, growths)

    def test_negative_offset(self):
        b = UploadBuffer()
        self.assertRaises(ValueError, b.write, -1, b"x")


class Reassembler(unittest.TestCase):
    def test_any_order_matches_offset_order(self):
        payload = b"The quick brown fox jumps over the lazy dog"
        cuts = [0, 3, 4, 10, 11, 16, 20, 31, len(payload)]
        chunks = [(cuts[i], payload[cuts[i]:cuts[i+1]]) for i in range(len(cuts) - 1)]

        for order in itertools.permutations(chunks[:6]):
            r = UploadReassembler(max_upload_bytes=1024)
            for offset, data in list(order) + chunks[6:]:
                r.write("fox.txt", data, offset)
            self.assertEqual(r.pop("fox.txt"), payload)

    def test_oversized_write_leaves_buffer_unchanged(self):
        r = UploadReassembler(max_upload_bytes=8)
        r.write("f", b"12345", 0)
        self.assertRaises(UploadTooLarge, r.write, "f", b"6789", 5)
        self.assertEqual(r.size("f"), 5)
        r.write("f", b"678", 5)
        self.assertEqual(r.pop("f"), b"12345678")

    def test_oversized_first_write_creates_nothing(self):
        r = UploadReassembler(max_upload_bytes=4)
        self.assertRaises(UploadTooLarge, r.write, "f", b"x", 4)
        self.assertFalse("f" in r)

    def test_pop_removes(self):
        r = UploadReassembler()
        r.write("a", b"1", 0)
        r.write("b", b"2", 0)
        self.assertEqual(sorted(r.filenames()), ["a", "b"])
        self.assertEqual(r.pop("a"), b"1")
        self.assertFalse("a" in r)
        self.assertEqual(r.filenames(), ["b"])

    def test_pop_without_writes_is_empty(self):
        r = UploadReassembler()
        self.assertEqual(r.pop("never-written"), b"")

    def test_discard(self):
        r = UploadReassembler()
        r.write("a", b"1", 0)
        r.discard("a")
        r.discard("a")
        self.assertEqual(r.filenames(), [])


class Complete(unittest.TestCase):
    def test_release_keeps_size(self):
        u = UploadComplete("report.csv", b"abc", "alice", "10.0.0.1")
        self.assertEqual(u.size, 3)
        u.release()
        self.assertIdentical(u.data, None)
        self.assertEqual(u.size, 3)
        self.assertIn("report.csv", repr(u))

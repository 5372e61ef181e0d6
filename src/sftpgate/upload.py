"""
In-memory reassembly of uploads that arrive as (offset, data) chunks.

SFTP clients may pipeline many WRITE requests and the server sees them in
whatever order they arrive. Offsets are absolute positions in the final file,
so each chunk is simply copied into place; gaps that have not been written
yet read back as zero bytes.
"""

DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class UploadTooLarge(Exception):
    """A write would take an upload past the configured maximum size."""


class UploadNotOpen(Exception):
    """A write or close arrived for a filename with no open handle."""


class UploadBuffer(object):
    """I am a growable byte buffer addressed by absolute offset.

    My capacity doubles whenever a write ends beyond it (capped at 'limit',
    if given), so a long run of small writes costs amortized O(n) copying.
    Bytes between my logical size and my capacity are always zero, which is
    what makes gap-filling free."""

    def __init__(self, limit=None):
        self._data = bytearray()
        self._size = 0
        self._limit = limit

    def __len__(self):
        return self._size

    def _reserve(self, capacity):
        current = len(self._data)
        if capacity <= current:
            return
        new_capacity = max(capacity, current * 2)
        if self._limit is not None:
            new_capacity = max(capacity, min(new_capacity, self._limit))
        self._data.extend(bytes(new_capacity - current))

    def write(self, offset, data):
        if offset < 0:
            raise ValueError("negative offset %r" % (offset,))
        end = offset + len(data)
        self._reserve(end)
        self._data[offset:end] = data
        if end > self._size:
            self._size = end

    def getvalue(self):
        return bytes(self._data[:self._size])


class UploadReassembler(object):
    """I hold one UploadBuffer per filename for the uploads of a single
    connection, and refuse any write that would exceed max_upload_bytes."""

    def __init__(self, max_upload_bytes=DEFAULT_MAX_UPLOAD_BYTES):
        self.max_upload_bytes = max_upload_bytes
        self._buffers = {}

    def __contains__(self, filename):
        return filename in self._buffers

    def size(self, filename):
        buf = self._buffers.get(filename)
        if buf is None:
            return 0
        return len(buf)

    def check_write(self, offset, length):
        size = offset + length
        if size > self.max_upload_bytes:
            raise UploadTooLarge("upload would reach %d bytes, more than the maximum of %d"
                                 % (size, self.max_upload_bytes))

    def write(self, filename, data, offset):
        self.check_write(offset, len(data))
        buf = self._buffers.get(filename)
        if buf is None:
            buf = self._buffers[filename] = UploadBuffer(limit=self.max_upload_bytes)
        buf.write(offset, data)

    def pop(self, filename):
        """Remove the buffer for 'filename' and return its contents. An
        upload that never received a write is empty."""
        buf = self._buffers.pop(filename, None)
        if buf is None:
            return b""
        return buf.getvalue()

    def discard(self, filename):
        self._buffers.pop(filename, None)

    def filenames(self):
        return list(self._buffers)


class UploadComplete(object):
    """I am the message sent from the SFTP frontend to the sink dispatcher
    once a client has closed an upload."""

    def __init__(self, filename, data, username, address):
        self.filename = filename
        self.data = data
        self.username = username
        self.address = address
        self.size = len(data)

    def release(self):
        self.data = None

    def __repr__(self):
        return "<UploadComplete %r (%d bytes) from %s@%s>" % (
            self.filename, self.size, self.username, self.address)

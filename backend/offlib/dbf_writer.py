"""
DBF write support for OpenFreiplaner data files.

Implements:
  create_table(filepath, fields)            – create an empty table (no-op if present)
  locked_table(filepath)                    – exclusive read-modify-write transaction
  LockedTable.rows / append / update / delete / next_id inside a transaction

Encoding contract:
  • String (C) fields: UTF-16 LE string bytes + \x00\x00 null terminator
    + \x20 space padding up to field_len.
    Empty strings: \x00\x00 + \x20 * (field_len - 2).
  • Date (D) fields: 'YYYYMMDD' ASCII, space-padded to field_len.
  • Numeric (N/F) fields: right-aligned ASCII decimal string, space-padded left.
  • Logical (L) fields: 'T' or 'F' (1 byte).

Write safety:
  • Exclusive fcntl.flock() held for the whole read-modify-write of a
    transaction, so "scan then append" is atomic across threads and processes.
  • Header bytes 1-3 (YY MM DD of last update) updated on every write.
  • EOF marker (0x1A) re-appended after every append.
"""

import fcntl
import os
import struct
import tempfile
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterator, List, Tuple

from .dbf_reader import (
    DELETED_FLAG, DESCRIPTOR_SIZE, EOF_MARKER, FIELD_TERMINATOR, HEADER_SIZE,
    iter_records, parse_record, read_fields, read_header,
)

DBASE_III = 0x03


# ─── string / field encoding ──────────────────────────────────────────────────

def _encode_string(value: str, field_len: int) -> bytes:
    """
    Encode a Python string to a C field.

    Format: [UTF-16-LE bytes] [\\x00\\x00 null-terminator] [\\x20 padding …]
    For an empty string the result is [\\x00\\x00] [\\x20 …].
    """
    if field_len <= 0:
        return b''

    if not value:
        if field_len >= 2:
            return b'\x00\x00' + b'\x20' * (field_len - 2)
        return b'\x00' * field_len

    encoded = value.encode('utf-16-le')

    # Truncate at an even-byte boundary, leaving room for the terminator
    max_content = max(0, field_len - 2)
    if len(encoded) > max_content:
        encoded = encoded[: max_content & ~1]

    null_term = b'\x00\x00' if field_len - len(encoded) >= 2 else b''
    padding = b'\x20' * (field_len - len(encoded) - len(null_term))
    return (encoded + null_term + padding)[:field_len]


def _encode_field(value: Any, field: Dict) -> bytes:
    """Encode a single value according to its DBF field descriptor."""
    ftype = field['type']
    flen = field['len']
    fdec = field['dec']

    if value is None:
        return b' ' * flen

    if ftype == 'C':
        return _encode_string(str(value), flen)

    if ftype == 'D':
        s = str(value).strip()
        if len(s) == 10 and s[4] == '-':
            s = s.replace('-', '')          # YYYY-MM-DD → YYYYMMDD
        if len(s) == 8 and s.isdigit():
            return s.encode('ascii').ljust(flen)[:flen]
        return b' ' * flen

    if ftype in ('N', 'F'):
        try:
            if fdec > 0:
                s = f"{float(value):>{flen}.{fdec}f}"
            else:
                s = f"{int(float(value)):>{flen}d}"
        except (ValueError, TypeError):
            s = ' ' * flen
        if len(s) > flen:
            raise ValueError(f"Value {value!r} does not fit field {field['name']} (len {flen})")
        return s.encode('ascii')

    if ftype == 'L':
        return b'T' if value else b'F'

    return str(value).ljust(flen).encode('ascii', errors='replace')[:flen]


def _build_row(fields: List[Dict], record: Dict, record_size: int) -> bytes:
    row = bytearray(b'\x20')   # delete-flag: active
    for field in fields:
        row += _encode_field(record.get(field['name']), field)
    if len(row) < record_size:
        row += b'\x20' * (record_size - len(row))
    return bytes(row[:record_size])


# ─── header helpers ───────────────────────────────────────────────────────────

def _stamp_header(f) -> None:
    """Write today's date (YY MM DD) into bytes 1-3 of an already-open file."""
    today = date.today()
    f.seek(1)
    f.write(bytes([today.year - 1900, today.month, today.day]))


def _update_record_count(f, new_count: int) -> None:
    """Write the new record count at bytes 4-7 of an already-open file."""
    f.seek(4)
    f.write(struct.pack('<I', new_count))


def create_table(filepath: str, fields: List[Dict]) -> bool:
    """
    Create an empty table with the given field descriptors.

    Returns False when the file already exists. The table is built in a temp
    file and hard-linked into place, so readers never see a partial header
    and only one of several racing creators wins.
    """
    header_size = HEADER_SIZE + DESCRIPTOR_SIZE * len(fields) + 1
    record_size = 1 + sum(f['len'] for f in fields)

    hdr = bytearray(HEADER_SIZE)
    hdr[0] = DBASE_III
    today = date.today()
    hdr[1:4] = bytes([today.year - 1900, today.month, today.day])
    struct.pack_into('<I', hdr, 4, 0)
    struct.pack_into('<H', hdr, 8, header_size)
    struct.pack_into('<H', hdr, 10, record_size)

    descriptors = bytearray()
    for field in fields:
        name = field['name'].encode('ascii')
        if len(name) > 10:
            raise ValueError(f"Field name too long for DBF: {field['name']}")
        if not 0 < field['len'] <= 254:
            raise ValueError(f"Invalid field length for {field['name']}: {field['len']}")
        desc = bytearray(DESCRIPTOR_SIZE)
        desc[0:len(name)] = name
        desc[11] = ord(field['type'])
        desc[16] = field['len']
        desc[17] = field.get('dec', 0)
        descriptors += desc

    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(os.path.abspath(filepath)), suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(bytes(hdr))
            f.write(bytes(descriptors))
            f.write(bytes([FIELD_TERMINATOR]))
            f.write(EOF_MARKER)
        os.chmod(tmp, 0o644)
        try:
            os.link(tmp, filepath)
        except FileExistsError:
            return False
    finally:
        os.unlink(tmp)
    return True


# ─── file locking ─────────────────────────────────────────────────────────────

@contextmanager
def _exclusive_open(filepath: str):
    """Open filepath for read+write with an exclusive POSIX lock."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"DBF-Datei nicht gefunden: {filepath}")
    with open(filepath, 'r+b') as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield f
            f.flush()
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class LockedTable:
    """A table opened under an exclusive lock.

    Every read and write goes through the same file handle while the lock is
    held, so callers can scan, decide and write without a TOCTOU window.
    """

    def __init__(self, f, fields: List[Dict]):
        self._f = f
        self.fields = fields
        self.num_records, self.header_size, self.record_size = read_header(f)
        self._dirty = False

    def rows(self, **filters) -> List[Tuple[int, Dict[str, Any]]]:
        """Return (raw_index, record) for live records matching all filters."""
        return [
            (idx, rec)
            for idx, rec in iter_records(
                self._f, self.fields, self.num_records, self.header_size, self.record_size
            )
            if _matches(rec, filters)
        ]

    def next_id(self) -> int:
        """max(ID)+1 over all records, deleted ones included."""
        max_id = 0
        self._f.seek(self.header_size)
        for _ in range(self.num_records):
            raw = self._f.read(self.record_size)
            if not raw or len(raw) < self.record_size:
                break
            max_id = max(max_id, parse_record(raw, self.fields).get('ID', 0) or 0)
        return max_id + 1

    def append(self, record: Dict) -> int:
        """Append a record; returns its raw index."""
        row = _build_row(self.fields, record, self.record_size)
        raw_idx = self.num_records
        self._f.seek(self.header_size + raw_idx * self.record_size)
        self._f.write(row)
        self._f.write(EOF_MARKER)
        self._f.truncate()
        self.num_records += 1
        _update_record_count(self._f, self.num_records)
        self._dirty = True
        return raw_idx

    def update(self, raw_idx: int, data: Dict) -> Dict[str, Any]:
        """Overwrite the listed fields of one record; returns the new record."""
        offset = self._offset(raw_idx)
        self._f.seek(offset)
        raw = bytearray(self._f.read(self.record_size))
        if not raw:
            raise ValueError(f"Record {raw_idx} could not be read (empty read)")
        if raw[0] == DELETED_FLAG:
            raise ValueError(f"Record {raw_idx} is already deleted")

        pos = 1
        for field in self.fields:
            if field['name'] in data:
                raw[pos:pos + field['len']] = _encode_field(data[field['name']], field)
            pos += field['len']

        self._f.seek(offset)
        self._f.write(bytes(raw))
        self._dirty = True
        return parse_record(bytes(raw), self.fields)

    def delete(self, raw_idx: int) -> bool:
        """Flag a record as deleted. Returns False if it already was."""
        offset = self._offset(raw_idx)
        self._f.seek(offset)
        if self._f.read(1) == bytes([DELETED_FLAG]):
            return False
        self._f.seek(offset)
        self._f.write(bytes([DELETED_FLAG]))
        self._dirty = True
        return True

    def _offset(self, raw_idx: int) -> int:
        if raw_idx < 0 or raw_idx >= self.num_records:
            raise IndexError(
                f"record_index {raw_idx} out of range (file has {self.num_records} records)"
            )
        return self.header_size + raw_idx * self.record_size

    def close(self) -> None:
        if self._dirty:
            _stamp_header(self._f)


@contextmanager
def locked_table(filepath: str) -> Iterator[LockedTable]:
    """Exclusive transaction over one table."""
    with _exclusive_open(filepath) as f:
        table = LockedTable(f, read_fields(f))
        try:
            yield table
        finally:
            table.close()


def _matches(record: Dict, filters: Dict) -> bool:
    """Return True if *record* satisfies all key=value pairs in *filters*."""
    for key, expected in filters.items():
        if record.get(key) != expected:
            return False
    return True

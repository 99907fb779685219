"""
DBF/dBASE III reader for OpenFreiplaner data files.

Character fields hold UTF-16 LE text followed by a 0x00 0x00 terminator and
space padding (see dbf_writer for the write side). Numeric fields are
right-aligned ASCII, dates are YYYYMMDD, logicals are a single T/F byte.
"""
import fcntl
import os
import struct
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Tuple

HEADER_SIZE = 32
DESCRIPTOR_SIZE = 32
FIELD_TERMINATOR = 0x0D
DELETED_FLAG = 0x2A
EOF_MARKER = b'\x1a'


def decode_text(raw: bytes) -> str:
    """Decode a C field: UTF-16 LE up to the first aligned double-null."""
    if not raw:
        return ''
    end = len(raw) - (len(raw) % 2)
    for i in range(0, end - 1, 2):
        if raw[i] == 0x00 and raw[i + 1] == 0x00:
            end = i
            break
    chunk = raw[:end]
    if not chunk:
        return ''
    try:
        return chunk.decode('utf-16-le').strip()
    except UnicodeDecodeError:
        # Hand-edited files may carry plain latin-1 text
        return raw.rstrip(b'\x00\x20').decode('latin-1').strip()


def parse_date(raw: str) -> Optional[str]:
    """Parse dBASE date string YYYYMMDD to ISO format."""
    s = raw.strip()
    if len(s) == 8 and s.isdigit():
        year, month, day = int(s[:4]), int(s[4:6]), int(s[6:8])
        if 1 <= month <= 12 and 1 <= day <= 31 and year > 0:
            return f"{year:04d}-{month:02d}-{day:02d}"
    return None


def parse_numeric(chunk: bytes, decimals: int) -> Any:
    s = chunk.decode('ascii', errors='replace').strip()
    if not s or s == '.':
        return 0
    try:
        return float(s) if ('.' in s or decimals > 0) else int(s)
    except ValueError:
        return 0


def parse_record(raw: bytes, fields: List[Dict]) -> Dict[str, Any]:
    """Parse one raw record (delete flag included) into a dict."""
    record: Dict[str, Any] = {}
    offset = 1
    for field in fields:
        chunk = raw[offset:offset + field['len']]
        ftype = field['type']
        if ftype == 'C':
            val = decode_text(chunk)
        elif ftype == 'D':
            val = parse_date(chunk.decode('ascii', errors='replace'))
        elif ftype in ('N', 'F'):
            val = parse_numeric(chunk, field['dec'])
        elif ftype == 'L':
            val = chunk.decode('ascii', errors='replace').strip() in ('T', 't', 'Y', 'y', '1')
        else:
            val = chunk.decode('ascii', errors='replace').strip()
        record[field['name']] = val
        offset += field['len']
    return record


def read_header(f: BinaryIO) -> Tuple[int, int, int]:
    """Return (num_records, header_size, record_size) of an open table."""
    f.seek(0)
    hdr = f.read(HEADER_SIZE)
    if len(hdr) < HEADER_SIZE:
        raise ValueError("Truncated DBF header")
    num_records = struct.unpack_from('<I', hdr, 4)[0]
    header_size = struct.unpack_from('<H', hdr, 8)[0]
    record_size = struct.unpack_from('<H', hdr, 10)[0]
    return num_records, header_size, record_size


def read_fields(f: BinaryIO) -> List[Dict[str, Any]]:
    """Read the field descriptor array that follows the header."""
    f.seek(HEADER_SIZE)
    fields = []
    while True:
        desc = f.read(DESCRIPTOR_SIZE)
        if not desc or len(desc) < DESCRIPTOR_SIZE or desc[0] == FIELD_TERMINATOR:
            break
        name = desc[0:11].split(b'\x00')[0].decode('ascii', errors='replace').strip()
        fields.append({'name': name, 'type': chr(desc[11]), 'len': desc[16], 'dec': desc[17]})
    return fields


def iter_records(
    f: BinaryIO,
    fields: List[Dict],
    num_records: int,
    header_size: int,
    record_size: int,
) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Yield (raw_index, record) for every non-deleted record."""
    f.seek(header_size)
    for raw_idx in range(num_records):
        raw = f.read(record_size)
        if not raw or len(raw) < record_size:
            break
        if raw[0] == DELETED_FLAG:
            continue
        yield raw_idx, parse_record(raw, fields)


def read_dbf(filepath: str) -> List[Dict[str, Any]]:
    """Read a .DBF file and return its live records as dicts."""
    if not os.path.exists(filepath):
        return []
    with open(filepath, 'rb') as f:
        # Shared lock: writers hold LOCK_EX for the whole read-modify-write
        fcntl.flock(f.fileno(), fcntl.LOCK_SH)
        try:
            try:
                num_records, header_size, record_size = read_header(f)
            except ValueError:
                return []
            fields = read_fields(f)
            return [rec for _, rec in iter_records(f, fields, num_records, header_size, record_size)]
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def get_table_fields(filepath: str) -> List[Dict[str, Any]]:
    """Return field definitions for a .DBF file."""
    if not os.path.exists(filepath):
        return []
    with open(filepath, 'rb') as f:
        return read_fields(f)

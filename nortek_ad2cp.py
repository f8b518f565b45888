"""
Nortek AD2CP Record Locator
===========================
Scans Nortek AD2CP (Signature series) binary files and builds an index of
the data records they contain, without interpreting the payloads.

FILE STRUCTURE
--------------
Back-to-back frames, each a header followed by a data record. Files cut
from a longer recording may begin with a fragment; everything before the
first sync byte is skipped.

    Field            Size   Type          Description
    -----            ----   ----          -----------
    Sync             1      uint8         Always 0xA5
    Header size      1      uint8         10 or 12 (bytes, including sync)
    ID               1      uint8         Record type (see RECORD_NAMES)
    Family           1      uint8         0x10 for the AD2CP family
    Data size        2 | 4  uint16/32 LE  uint16 when header size is 10,
                                          uint32 when header size is 12
    Data checksum    2      uint16 LE     Checksum of the data record
    Header checksum  2      uint16 LE     Checksum of the preceding header bytes
    Data             N      bytes         N = data size

CHECKSUM
--------
Both checksums start at 0xB58C and add the little-endian 16-bit words of
the covered bytes, modulo 2**16. An odd trailing byte is added as a word
whose high byte is zero.

Data checksums are always verified. Header checksums are only verified
when asked for (``verify_header=True``).

References
----------
Nortek "Integrators Guide AD2CP", section 6.1 (header definition).
"""

import argparse
import io
import logging
import os
import struct
import sys
from collections import namedtuple
from contextlib import contextmanager, nullcontext

import numpy as np

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SYNC = 0xA5
FAMILY = 0x10
CHECKSUM_SEED = 0xB58C

# Header size -> layout of the bytes after sync/size/id/family
HEADER_FORMATS = {
    10: '<HHH',  # data size(2) + data checksum(2) + header checksum(2)
    12: '<IHH',  # data size(4) + data checksum(2) + header checksum(2)
}

# Record type IDs
REC_BURST             = 0x15
REC_AVERAGE           = 0x16
REC_BOTTOM_TRACK      = 0x17
REC_INTERLEAVED_BURST = 0x18
REC_BURST_ALTIMETER   = 0x1a
REC_DVL_BOTTOM_TRACK  = 0x1b
REC_ECHOSOUNDER       = 0x1c
REC_DVL_WATER_TRACK   = 0x1d
REC_ALTIMETER         = 0x1e
REC_AVERAGE_ALTIMETER = 0x1f
REC_STRING            = 0xa0

RECORD_NAMES = {
    REC_BURST:             'Burst',
    REC_AVERAGE:           'Average',
    REC_BOTTOM_TRACK:      'Bottom Track',
    REC_INTERLEAVED_BURST: 'Interleaved Burst (beam 5)',
    REC_BURST_ALTIMETER:   'Burst Altimeter Raw',
    REC_DVL_BOTTOM_TRACK:  'DVL Bottom Track',
    REC_ECHOSOUNDER:       'Echo Sounder',
    REC_DVL_WATER_TRACK:   'DVL Water Track',
    REC_ALTIMETER:         'Altimeter',
    REC_AVERAGE_ALTIMETER: 'Average Altimeter Raw',
    REC_STRING:            'String',
}

# Working buffer sizing for payload reads
INITIAL_BUFFER_SIZE = 10000
BUFFER_GROWTH = 1.4

SYNC_CHUNK_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AD2CPError(ValueError):
    """
    Base class for errors after which the stream can no longer be
    framed. ``pos`` is the byte position where the problem was found.
    """
    def __init__(self, message, pos=None):
        super().__init__(message)
        self.pos = pos


class NoSyncFound(AD2CPError):
    """The stream does not contain a single sync byte."""


class SyncLost(AD2CPError):
    """A frame did not start with the sync byte."""


class TruncatedHeader(AD2CPError):
    """The stream ended part way through a header."""


class InvalidHeaderSize(AD2CPError):
    """Header size byte was neither 10 nor 12."""


# ---------------------------------------------------------------------------
# Low-level parsing
# ---------------------------------------------------------------------------

Header = namedtuple('Header', [
    'sync', 'header_size', 'id', 'family',
    'data_size', 'data_checksum', 'header_checksum', 'raw',
])

Record = namedtuple('Record', ['offset', 'length', 'id'])


def checksum(data):
    """Nortek running checksum of ``data`` (bytes-like), as an int in [0, 65535]."""
    data = memoryview(data).cast('B')
    n = len(data)
    total = CHECKSUM_SEED
    if n >= 2:
        words = np.frombuffer(data, dtype='<u2', count=n // 2)
        total += int(words.sum(dtype=np.uint64))
    if n % 2:
        total += data[n - 1]
    return total & 0xFFFF


def find_sync(f):
    """Position ``f`` on the next sync byte and return how many bytes were skipped.

    Raises NoSyncFound if the stream ends first.
    """
    start = f.tell()
    skipped = 0
    while True:
        chunk = f.read(SYNC_CHUNK_SIZE)
        if not chunk:
            raise NoSyncFound(
                f"stream does not contain a single 0x{SYNC:02x} byte "
                f"(searched {skipped} bytes)", pos=start + skipped)
        i = chunk.find(SYNC)
        if i != -1:
            skipped += i
            f.seek(start + skipped)
            return skipped
        skipped += len(chunk)


def read_header(f):
    """Read one frame header at the current position of ``f``.

    Returns a Header, or None if the stream ends exactly at the header
    boundary.
    """
    pos = f.tell()
    fixed = f.read(4)
    if not fixed:
        return None
    if len(fixed) < 4:
        raise TruncatedHeader(
            f"cannot read header at byte {pos}: only {len(fixed)} bytes left",
            pos=pos)
    sync, header_size, rid, family = fixed
    if sync != SYNC:
        raise SyncLost(
            f"expected sync byte 0x{SYNC:02x} but found 0x{sync:02x} at byte {pos}",
            pos=pos)
    fmt = HEADER_FORMATS.get(header_size)
    if fmt is None:
        raise InvalidHeaderSize(
            f"header size must be 10 or 12 but it is {header_size} at byte {pos}",
            pos=pos)
    rest = f.read(header_size - 4)
    if len(rest) < header_size - 4:
        raise TruncatedHeader(
            f"cannot read {header_size}-byte header at byte {pos}: "
            f"only {4 + len(rest)} bytes left", pos=pos)
    data_size, data_checksum, header_checksum = struct.unpack(fmt, rest)
    return Header(sync, header_size, rid, family,
                  data_size, data_checksum, header_checksum, fixed + rest)


# ---------------------------------------------------------------------------
# Scan result
# ---------------------------------------------------------------------------

class ScanResult:
    """Ordered record index produced by scan_ad2cp().

    Attributes
    ----------
    records : list of Record
        (offset, length, id) for each kept record, in stream order.
        ``offset`` is the byte position of the data record, i.e. just
        past its header.
    skipped : int
        Bytes before the first sync byte.
    frames : int
        Headers decoded, including frames not selected by from/to/by.
    checksum_errors : int
        Kept records whose data checksum did not match.
    header_checksum_errors : int
        Header checksum mismatches (only counted with verify_header).
    unknown_ids : int
        Kept records whose ID is not in RECORD_NAMES.
    truncated : bool
        True if the stream ended inside a data record.
    """

    def __init__(self, skipped=0):
        self.records = []
        self.skipped = skipped
        self.frames = 0
        self.checksum_errors = 0
        self.header_checksum_errors = 0
        self.unknown_ids = 0
        self.truncated = False

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def __getitem__(self, i):
        return self.records[i]

    def __repr__(self):
        return (f"<ScanResult {len(self.records)} records, "
                f"checksum_errors={self.checksum_errors}, "
                f"truncated={self.truncated}>")

    @property
    def broken(self):
        """True if any data checksum failed or the stream was truncated."""
        return self.checksum_errors > 0 or self.truncated

    @property
    def index(self):
        return np.array([r.offset for r in self.records], dtype=np.int64)

    @property
    def length(self):
        return np.array([r.length for r in self.records], dtype=np.int64)

    @property
    def id(self):
        return np.array([r.id for r in self.records], dtype=np.int64)

    def as_dict(self):
        """Return {'index', 'length', 'id', 'broken_end'} with numpy arrays."""
        return {
            'index': self.index,
            'length': self.length,
            'id': self.id,
            'broken_end': self.broken,
        }


# ---------------------------------------------------------------------------
# High-level API
# ---------------------------------------------------------------------------

@contextmanager
def _open_source(source):
    """Yield a binary file for ``source``; only files opened here are closed."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        raise TypeError("expected a path or a binary file object; "
                        "wrap raw data in io.BytesIO")
    if isinstance(source, (str, os.PathLike)):
        with open(source, 'rb') as f:
            yield f
    else:
        with nullcontext(source) as f:
            yield f


def scan_ad2cp(source, from_=1, to=0, by=1, verify_header=False):
    """Locate the data records in an AD2CP file.

    Parameters
    ----------
    source : str, pathlib.Path or binary file object
        File to scan. A file object must be seekable; it is scanned from
        its current position and left open. Raw ``bytes`` are not
        accepted as a path; wrap them in ``io.BytesIO``.
    from_ : int
        1-based index of the first record to keep.
    to : int
        1-based index of the last record to examine. 0 scans the whole
        file.
    by : int
        Keep every ``by``-th record starting at ``from_``.
    verify_header : bool
        Also verify header checksums.

    Returns
    -------
    ScanResult
        Data records of unselected frames are skipped without being read,
        so their checksums are not checked.

    Raises
    ------
    TypeError
        If ``source`` is raw bytes.
    ValueError
        If a bound is negative or ``by`` is 0.
    NoSyncFound, SyncLost, TruncatedHeader, InvalidHeaderSize
        If the stream cannot be framed. No partial result is returned.
    """
    for name, value in (('from', from_), ('to', to), ('by', by)):
        if value < 0:
            raise ValueError(f"'{name}' must be positive but it is {value}")
    if by == 0:
        raise ValueError("'by' must be at least 1")
    from_ = max(from_, 1)
    logger.info("scan_ad2cp(source=%r, from=%d, to=%d, by=%d)", source, from_, to, by)

    with _open_source(source) as f:
        start = f.tell()
        end = f.seek(0, io.SEEK_END)
        f.seek(start)

        result = ScanResult(skipped=find_sync(f))
        if result.skipped:
            logger.info("skipped %d bytes before the first sync byte", result.skipped)

        buf = bytearray(INITIAL_BUFFER_SIZE)
        while to == 0 or result.frames < to:
            header = read_header(f)
            if header is None:
                break
            result.frames += 1
            offset = f.tell()
            logger.debug(
                "frame %d at %d: size=%d id=0x%02x family=0x%02x "
                "data_size=%d data_checksum=%d header_checksum=%d",
                result.frames, offset - header.header_size, header.header_size,
                header.id, header.family, header.data_size,
                header.data_checksum, header.header_checksum)
            if header.family != FAMILY:
                logger.debug("frame %d has family 0x%02x", result.frames, header.family)

            if verify_header:
                hcs = checksum(header.raw[:-2])
                if hcs != header.header_checksum:
                    result.header_checksum_errors += 1
                    logger.warning("header checksum at byte %d is %d but it should be %d",
                                   offset - header.header_size, hcs, header.header_checksum)

            # checked before the buffer grows; data_size can claim up to 4 GiB
            if offset + header.data_size > end:
                result.truncated = True
                logger.warning("ran out of file in data record at byte %d; "
                               "wanted %d bytes but only %d remain",
                               offset, header.data_size, end - offset)
                break

            k = result.frames
            if k < from_ or (k - from_) % by:
                f.seek(header.data_size, io.SEEK_CUR)
                continue

            if header.data_size > len(buf):
                buf = bytearray(max(header.data_size, int(len(buf) * BUFFER_GROWTH)))
            view = memoryview(buf)[:header.data_size]
            nread = f.readinto(view) or 0
            if nread < header.data_size:
                result.truncated = True
                logger.warning("ran out of file in data record at byte %d; "
                               "wanted %d bytes but got only %d",
                               offset, header.data_size, nread)
                break

            dcs = checksum(view)
            if dcs != header.data_checksum:
                result.checksum_errors += 1
                logger.warning("data checksum at byte %d is %d but it should be %d",
                               offset, dcs, header.data_checksum)
            if header.id not in RECORD_NAMES:
                result.unknown_ids += 1
                logger.debug("unknown record id 0x%02x at byte %d", header.id, offset)
            result.records.append(Record(offset, header.data_size, header.id))

    logger.info("found %d records in %d frames (checksum errors: %d, truncated: %s)",
                len(result), result.frames, result.checksum_errors, result.truncated)
    return result


def read_payloads(source, records):
    """Read the data records listed in ``records`` (a ScanResult or Records).

    Returns a dict of {record_id: [payload_bytes, ...]} in stream order.
    """
    payloads = {}
    with _open_source(source) as f:
        for rec in records:
            f.seek(rec.offset)
            data = f.read(rec.length)
            if len(data) < rec.length:
                raise AD2CPError(
                    f"data record at byte {rec.offset} wants {rec.length} bytes "
                    f"but only {len(data)} remain", pos=rec.offset)
            payloads.setdefault(rec.id, []).append(data)
    return payloads


def record_name(rid):
    return RECORD_NAMES.get(rid, f'Unknown_0x{rid:02x}')


def summarize(result):
    """Count records per type.

    Returns a dict keyed by record name, in order of first appearance,
    with 'id', 'id_hex', 'count', 'payload_bytes' (size of the first
    record) and 'total_bytes'.
    """
    summary = {}
    for rec in result:
        name = record_name(rec.id)
        s = summary.get(name)
        if s is None:
            s = summary[name] = {
                'id': rec.id,
                'id_hex': f'0x{rec.id:02x}',
                'count': 0,
                'payload_bytes': rec.length,
                'total_bytes': 0,
            }
        s['count'] += 1
        s['total_bytes'] += rec.length
    return summary


def print_summary(result):
    """Print a summary table of the record types in a ScanResult."""
    summary = summarize(result)
    print(f"{'Record Type':<28} {'Hex':>6} {'Count':>10} {'Payload':>8}")
    print('-' * 56)
    for name in sorted(summary, key=lambda k: summary[k]['count'], reverse=True):
        s = summary[name]
        print(f"  {name:<26} {s['id_hex']:>6} {s['count']:>10} {s['payload_bytes']:>6} B")
    print()
    print(f"Records:          {len(result)} of {result.frames} frames")
    print(f"Skipped bytes:    {result.skipped}")
    print(f"Checksum errors:  {result.checksum_errors}")
    print(f"Truncated:        {'yes' if result.truncated else 'no'}")
    if result.header_checksum_errors:
        print(f"Header checksum errors: {result.header_checksum_errors}")


def plot_index(result, outpath=None):
    """Diagnostic plot of a ScanResult: record sizes and counts per type.

    Parameters
    ----------
    result : ScanResult
    outpath : str or Path or None
        Save to file; if None, plt.show().
    """
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    ids = result.id
    lengths = result.length
    summary = summarize(result)

    fig, axes = plt.subplots(1, 2, figsize=(14, 5))
    fig.suptitle(f"AD2CP record index: {len(result)} records"
                 f"{'  (broken)' if result.broken else ''}",
                 fontsize=13, fontweight='bold')

    ax = axes[0]
    n = np.arange(1, len(result) + 1)
    for k, rid in enumerate(np.unique(ids)):
        sel = ids == rid
        ax.plot(n[sel], lengths[sel], '.', ms=2, color=f'C{k % 10}',
                label=record_name(int(rid)))
    ax.set_xlabel('Record number')
    ax.set_ylabel('Data size (bytes)')
    ax.set_title('Data record size')
    if len(result):
        ax.legend(fontsize=8, markerscale=4)

    ax = axes[1]
    names = list(summary)
    ax.bar(range(len(names)), [summary[s]['count'] for s in names], color='steelblue')
    ax.set_xticks(range(len(names)))
    ax.set_xticklabels(names, rotation=30, ha='right', fontsize=8)
    ax.set_ylabel('Count')
    ax.set_title('Records per type')

    fig.tight_layout()

    if outpath:
        fig.savefig(outpath, dpi=150, bbox_inches='tight')
        print(f"  Saved plot: {outpath}")
    else:
        plt.show()
    plt.close(fig)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='nortek-ad2cp',
        description='Index the data records in a Nortek AD2CP file.')
    parser.add_argument('file', help='AD2CP file')
    parser.add_argument('--from', dest='from_', type=int, default=1,
                        help='first record to keep (1-based, default 1)')
    parser.add_argument('--to', type=int, default=0,
                        help='last record to examine (default 0 = all)')
    parser.add_argument('--by', type=int, default=1,
                        help='keep every BY-th record (default 1)')
    parser.add_argument('--verify-header', action='store_true',
                        help='also verify header checksums')
    parser.add_argument('--plot', action='store_true',
                        help='save a diagnostic plot next to the file')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='-v for a summary log, -vv for a per-record trace')
    args = parser.parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    print(f"Parsing: {args.file}")
    try:
        print(f"Size: {os.path.getsize(args.file) / 1e6:.1f} MB")
        print()
        result = scan_ad2cp(args.file, from_=args.from_, to=args.to, by=args.by,
                            verify_header=args.verify_header)
    except (OSError, ValueError) as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return 1

    print_summary(result)

    if args.plot:
        plot_index(result, outpath=os.path.splitext(args.file)[0] + '_index.png')
    return 0


if __name__ == '__main__':
    sys.exit(main())

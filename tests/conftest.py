import struct

import numpy as np
import pytest


def nortek_checksum(data):
    cs = 0xB58C
    for i in range(0, len(data) - 1, 2):
        cs += data[i] + 256 * data[i + 1]
    if len(data) % 2:
        cs += data[-1]
    return cs & 0xFFFF


def build_frame(payload, rid=0x16, header_size=10, family=0x10,
                data_checksum=None, header_checksum=None):
    fmt = '<BBBBH' if header_size == 10 else '<BBBBI'
    if data_checksum is None:
        data_checksum = nortek_checksum(payload)
    head = struct.pack(fmt, 0xA5, header_size, rid, family, len(payload))
    head += struct.pack('<H', data_checksum)
    if header_checksum is None:
        header_checksum = nortek_checksum(head)
    return head + struct.pack('<H', header_checksum) + payload


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def payload(rng):
    def make(n):
        return rng.integers(0, 256, n, dtype=np.uint8).tobytes()
    return make


@pytest.fixture
def make_frame():
    return build_frame


@pytest.fixture
def frames(payload):
    """Eight well-formed frames with mixed ids, sizes and header widths."""
    layout = [
        (0x16, 10, 120),
        (0x15, 10, 64),
        (0xa0, 10, 37),
        (0x16, 12, 120),
        (0x17, 10, 0),
        (0x1c, 12, 300),
        (0x16, 10, 120),
        (0x15, 10, 2),
    ]
    return [build_frame(payload(n), rid=rid, header_size=hs) for rid, hs, n in layout]


@pytest.fixture
def garbage(rng):
    def make(n):
        data = rng.integers(0, 0xA5, n, dtype=np.uint8)
        return data.tobytes()
    return make
